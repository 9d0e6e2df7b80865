import threading
import time

from exam_worker.errors import ErrorKind, GeminiApiError, MalformedResponseError, ValidationError
from exam_worker.services.key_pool import KeyPool
from exam_worker.services.retry_orchestrator import CallStatus, RetryOrchestrator, RetryPolicy

_KEY = "key-test-00000001"


class _RecordingWaiter:
    def __init__(self):
        self.waits: list[float] = []

    def __call__(self, cancel_event: threading.Event, seconds: float) -> bool:
        self.waits.append(seconds)
        return cancel_event.is_set()


class _ListStatsSink:
    def __init__(self):
        self.records = []

    def record(self, record):
        self.records.append(record)


class _BrokenStatsSink:
    def record(self, record):
        del record
        raise RuntimeError("stats backend down")


def _orchestrator(pool: KeyPool, *, max_attempts: int = 3, stats_sink=None, waiter=None) -> RetryOrchestrator:
    return RetryOrchestrator(
        key_pool=pool,
        policy=RetryPolicy(max_attempts=max_attempts, base_delay_ms=1000, max_delay_ms=60000, fixed_delay_ms=2000),
        stats_sink=stats_sink,
        waiter=waiter or _RecordingWaiter(),
    )


def test_validation_error_surfaces_after_one_attempt():
    pool = KeyPool([_KEY])
    calls: list[str] = []

    def _call(credential: str):
        calls.append(credential)
        raise ValidationError("Invalid data URL")

    outcome = _orchestrator(pool).execute(_call, model_id="gemini-test", item_id="exam-1:q1")

    assert outcome.status is CallStatus.FAILED
    assert outcome.error_kind is ErrorKind.FATAL
    assert outcome.attempts == 1
    assert not outcome.retryable
    assert calls == [_KEY]
    assert pool.delay(_KEY) == 1000


def test_rate_limited_every_attempt_exhausts_budget_with_growing_waits():
    pool = KeyPool([_KEY], initial_delay_ms=1000, max_delay_ms=60000)
    waiter = _RecordingWaiter()
    sink = _ListStatsSink()
    calls: list[str] = []

    def _call(credential: str):
        calls.append(credential)
        raise GeminiApiError("Resource has been exhausted", status_code=429)

    outcome = _orchestrator(pool, stats_sink=sink, waiter=waiter).execute(_call, model_id="gemini-test")

    assert outcome.status is CallStatus.FAILED
    assert outcome.error_kind is ErrorKind.RATE_LIMITED
    assert outcome.attempts == 3
    assert outcome.retryable
    assert outcome.error_message.startswith("Failed after 3 attempts: ")
    assert "Resource has been exhausted" in outcome.error_message
    assert len(calls) == 3
    assert waiter.waits == [1.0, 4.0, 8.0]
    assert pool.delay(_KEY) == 8000
    assert [record.success for record in sink.records] == [False, False, False]


def test_success_after_server_error_resets_key_backoff():
    pool = KeyPool([_KEY], initial_delay_ms=1000)
    sink = _ListStatsSink()
    attempts: list[int] = []

    def _call(credential: str):
        del credential
        attempts.append(1)
        if len(attempts) == 1:
            raise GeminiApiError("The model is overloaded", status_code=503)
        return {"ok": True}

    outcome = _orchestrator(pool, stats_sink=sink).execute(_call, model_id="gemini-test", item_id="exam-1:q2")

    assert outcome.ok
    assert outcome.value == {"ok": True}
    assert outcome.attempts == 2
    assert pool.delay(_KEY) == 1000
    assert [record.success for record in sink.records] == [False, True]
    assert sink.records[0].credential_mask == "0001"
    assert sink.records[1].item_id == "exam-1:q2"


def test_malformed_response_is_retried_but_not_requeued():
    pool = KeyPool([_KEY])

    def _call(credential: str):
        del credential
        raise MalformedResponseError("Empty response from AI")

    outcome = _orchestrator(pool, max_attempts=2).execute(_call, model_id="gemini-test")

    assert outcome.error_kind is ErrorKind.MALFORMED_RESPONSE
    assert outcome.attempts == 2
    assert not outcome.retryable
    assert pool.delay(_KEY) == 1000


def test_retry_after_header_raises_next_wait():
    pool = KeyPool([_KEY], initial_delay_ms=1000, max_delay_ms=60000)
    waiter = _RecordingWaiter()

    def _call(credential: str):
        del credential
        raise GeminiApiError("quota", status_code=429, retry_after=30)

    _orchestrator(pool, max_attempts=2, waiter=waiter).execute(_call, model_id="gemini-test")

    assert waiter.waits == [1.0, 32.0]


def test_already_cancelled_call_never_attempts():
    pool = KeyPool([_KEY])
    cancel_event = threading.Event()
    cancel_event.set()
    calls: list[str] = []

    outcome = _orchestrator(pool).execute(calls.append, model_id="gemini-test", cancel_event=cancel_event)

    assert outcome.status is CallStatus.CANCELLED
    assert outcome.attempts == 0
    assert calls == []


def test_cancel_during_backoff_wait_returns_before_wait_elapses():
    pool = KeyPool([_KEY], initial_delay_ms=1, max_delay_ms=60000)
    cancel_event = threading.Event()
    calls: list[str] = []
    orchestrator = RetryOrchestrator(
        key_pool=pool,
        policy=RetryPolicy(max_attempts=3, base_delay_ms=5000, max_delay_ms=60000),
    )

    def _call(credential: str):
        calls.append(credential)
        threading.Timer(0.05, cancel_event.set).start()
        raise GeminiApiError("Too many requests", status_code=429)

    started_at = time.monotonic()
    outcome = orchestrator.execute(_call, model_id="gemini-test", cancel_event=cancel_event)
    elapsed = time.monotonic() - started_at

    assert outcome.status is CallStatus.CANCELLED
    assert elapsed < 5.0
    assert len(calls) == 1


def test_none_result_means_cancelled_mid_stream():
    pool = KeyPool([_KEY])

    outcome = _orchestrator(pool).execute(lambda credential: None, model_id="gemini-test")

    assert outcome.status is CallStatus.CANCELLED
    assert outcome.attempts == 1


def test_stats_sink_failure_does_not_change_outcome():
    pool = KeyPool([_KEY])

    outcome = _orchestrator(pool, stats_sink=_BrokenStatsSink()).execute(
        lambda credential: {"credential": credential}, model_id="gemini-test"
    )

    assert outcome.ok
    assert outcome.value == {"credential": _KEY}


def test_attempts_rotate_through_keys():
    pool = KeyPool(["key-a-00000001", "key-b-00000002"])
    used: list[str] = []

    def _call(credential: str):
        used.append(credential)
        raise GeminiApiError("unavailable", status_code=500)

    _orchestrator(pool, max_attempts=3).execute(_call, model_id="gemini-test")

    assert used == ["key-a-00000001", "key-b-00000002", "key-a-00000001"]
