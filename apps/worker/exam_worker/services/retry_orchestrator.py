from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from exam_worker.errors import REQUEUE_KINDS, RETRYABLE_KINDS, ErrorKind, classify_error
from exam_worker.schemas.work_items import StatsRecord
from exam_worker.services.key_pool import CredentialPool

_STATS_ERROR_MESSAGE_LIMIT = 200


class StatsSink(Protocol):
    def record(self, record: StatsRecord) -> None: ...


class CallStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CallOutcome:
    status: CallStatus
    value: Any = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    attempts: int = 0

    @classmethod
    def succeeded(cls, value: Any, *, attempts: int) -> CallOutcome:
        return cls(status=CallStatus.SUCCEEDED, value=value, attempts=attempts)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str, *, attempts: int) -> CallOutcome:
        return cls(status=CallStatus.FAILED, error_kind=kind, error_message=message, attempts=attempts)

    @classmethod
    def cancelled(cls, *, attempts: int) -> CallOutcome:
        return cls(
            status=CallStatus.CANCELLED,
            error_kind=ErrorKind.CANCELLED,
            error_message="The operation was aborted.",
            attempts=attempts,
        )

    @property
    def ok(self) -> bool:
        return self.status is CallStatus.SUCCEEDED

    @property
    def retryable(self) -> bool:
        """Whether the item deserves another round after this outcome."""
        return self.status is CallStatus.FAILED and self.error_kind in REQUEUE_KINDS


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    fixed_delay_ms: int = 2000

    def retry_delay_ms(self, *, failures: int, last_kind: ErrorKind | None) -> int:
        if failures <= 0 or last_kind is None:
            return 0
        if last_kind is ErrorKind.RATE_LIMITED:
            return min(2**failures * self.base_delay_ms, self.max_delay_ms)
        return self.fixed_delay_ms


def wait_or_cancel(cancel_event: threading.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; True when the wait ended because of cancellation."""
    if seconds <= 0:
        return cancel_event.is_set()
    return cancel_event.wait(seconds)


class RetryOrchestrator:
    """Run one logical AI call with key rotation, backoff and a retry budget.

    ``call`` receives the credential for the attempt and returns the parsed
    result, or None when it observed cancellation mid-transport. Whatever
    happens, ``execute`` returns a ``CallOutcome``; cancellation and budget
    exhaustion are outcomes, not exceptions.
    """

    def __init__(
        self,
        *,
        key_pool: CredentialPool,
        policy: RetryPolicy,
        stats_sink: StatsSink | None = None,
        logger: logging.Logger | None = None,
        waiter: Callable[[threading.Event, float], bool] = wait_or_cancel,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if policy.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self._key_pool = key_pool
        self._policy = policy
        self._stats_sink = stats_sink
        self._logger = logger or logging.getLogger(__name__)
        self._waiter = waiter
        self._clock = clock

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def execute(
        self,
        call: Callable[[str], Any],
        *,
        model_id: str,
        item_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CallOutcome:
        cancel_event = cancel_event or threading.Event()
        max_attempts = self._policy.max_attempts
        failures = 0
        last_kind: ErrorKind | None = None
        last_message = ""
        retry_after: float | None = None

        for attempt in range(1, max_attempts + 1):
            if cancel_event.is_set():
                return CallOutcome.cancelled(attempts=attempt - 1)

            credential = self._key_pool.next()
            masked = self._key_pool.mask(credential)

            wait_ms = self._policy.retry_delay_ms(failures=failures, last_kind=last_kind)
            if retry_after is not None:
                wait_ms = max(wait_ms, min(int(retry_after * 1000), self._policy.max_delay_ms))
            key_delay_ms = self._key_pool.delay(credential)
            if key_delay_ms > self._key_pool.initial_delay_ms:
                self._logger.info("Using key ...%s with backoff delay %dms", masked, key_delay_ms)
            wait_ms += key_delay_ms
            if wait_ms > 0 and self._waiter(cancel_event, wait_ms / 1000):
                self._logger.info("Cancelled while waiting to retry | item=%s | attempt=%d", item_id, attempt)
                return CallOutcome.cancelled(attempts=attempt - 1)

            self._key_pool.record_call(credential)
            started_at = self._clock()
            try:
                value = call(credential)
            except Exception as exc:
                duration_ms = self._elapsed_ms(started_at)
                if cancel_event.is_set():
                    return CallOutcome.cancelled(attempts=attempt)

                kind = classify_error(exc)
                message = str(exc) or exc.__class__.__name__
                self._key_pool.record_failure(credential)
                if kind in (ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT_SERVER):
                    new_delay_ms = self._key_pool.increase_delay(credential)
                    self._logger.warning(
                        "Rate limit/server error for key ...%s, increasing delay to %dms", masked, new_delay_ms
                    )
                self._report(
                    credential_mask=masked,
                    success=False,
                    error_message=message,
                    item_id=item_id,
                    duration_ms=duration_ms,
                    model_id=model_id,
                )

                if kind not in RETRYABLE_KINDS:
                    self._logger.error(
                        "Gemini call failed without retry | item=%s | kind=%s | key=...%s | error=%s",
                        item_id,
                        kind.value,
                        masked,
                        message[:200],
                    )
                    return CallOutcome.failed(kind, message, attempts=attempt)

                failures += 1
                last_kind = kind
                last_message = message
                retry_after = getattr(exc, "retry_after", None)
                self._logger.warning(
                    "Gemini attempt %d/%d failed | item=%s | kind=%s | key=...%s | error=%s",
                    attempt,
                    max_attempts,
                    item_id,
                    kind.value,
                    masked,
                    message[:200],
                )
                continue

            duration_ms = self._elapsed_ms(started_at)
            if value is None or cancel_event.is_set():
                return CallOutcome.cancelled(attempts=attempt)

            self._key_pool.reset_delay(credential)
            self._key_pool.record_success(credential)
            self._report(
                credential_mask=masked,
                success=True,
                error_message=None,
                item_id=item_id,
                duration_ms=duration_ms,
                model_id=model_id,
            )
            self._logger.info(
                "Gemini call succeeded | item=%s | attempt=%d | duration_ms=%d | key=...%s",
                item_id,
                attempt,
                duration_ms,
                masked,
            )
            return CallOutcome.succeeded(value, attempts=attempt)

        final_message = f"Failed after {max_attempts} attempts: {last_message}"
        self._logger.error("Gemini call exhausted retries | item=%s | error=%s", item_id, final_message[:300])
        return CallOutcome.failed(last_kind or ErrorKind.FATAL, final_message, attempts=max_attempts)

    def _elapsed_ms(self, started_at: float) -> int:
        return max(0, int((self._clock() - started_at) * 1000))

    def _report(
        self,
        *,
        credential_mask: str,
        success: bool,
        error_message: str | None,
        item_id: str | None,
        duration_ms: int,
        model_id: str,
    ) -> None:
        if self._stats_sink is None:
            return
        try:
            self._stats_sink.record(
                StatsRecord(
                    credential_mask=credential_mask,
                    success=success,
                    error_message=error_message[:_STATS_ERROR_MESSAGE_LIMIT] if error_message else None,
                    item_id=item_id,
                    duration_ms=duration_ms,
                    model_id=model_id,
                )
            )
        except Exception as exc:
            self._logger.warning("Failed to record key stats: %s", exc)
