from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, TypeVar

from exam_worker.schemas.work_items import PendingBatch, WorkItem
from exam_worker.services.retry_orchestrator import CallOutcome, CallStatus

T = TypeVar("T")

ProcessItem = Callable[[WorkItem, threading.Event], CallOutcome]


class WorkSource(Protocol):
    def fetch_pending(self, limit: int) -> PendingBatch: ...


class ResultSink(Protocol):
    def persist(self, item: WorkItem, result: Any) -> None: ...


class ItemStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRY = "retry"


@dataclass(frozen=True)
class ItemResult:
    item: WorkItem
    status: ItemStatus
    attempts: int = 0
    error_message: str | None = None


@dataclass(frozen=True)
class RoundSummary:
    round_no: int
    processed: int
    successful: int
    failed: int
    cancelled: int
    retry_queue: tuple[WorkItem, ...] = ()
    window_sizes: tuple[int, ...] = ()
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def retry_count(self) -> int:
        return len(self.retry_queue)


def windows(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("window size must be positive")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


class BatchScheduler:
    """Multi-round, windowed execution of work items.

    Each round runs its items in windows of ``concurrency`` tasks; a window
    only starts once every task of the previous one has settled. A stop
    request is honored at round and window boundaries, while ``cancel``
    additionally signals every in-flight call.

    With ``max_requeues`` set, an item that keeps coming back as retryable is
    failed for good after that many requeues instead of looping forever.
    """

    def __init__(
        self,
        *,
        work_source: WorkSource,
        result_sink: ResultSink,
        process_item: ProcessItem,
        batch_size: int = 50,
        concurrency: int = 5,
        round_delay_seconds: float = 5,
        idle_delay_seconds: float = 60,
        error_delay_seconds: float = 30,
        max_requeues: int | None = None,
        history_size: int = 50,
        on_round_complete: Callable[[RoundSummary], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if max_requeues is not None and max_requeues < 0:
            raise ValueError("max_requeues must not be negative")
        self._work_source = work_source
        self._result_sink = result_sink
        self._process_item = process_item
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._round_delay_seconds = round_delay_seconds
        self._idle_delay_seconds = idle_delay_seconds
        self._error_delay_seconds = error_delay_seconds
        self._max_requeues = max_requeues
        self._on_round_complete = on_round_complete
        self._logger = logger or logging.getLogger(__name__)

        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()
        self._retry_queue: list[WorkItem] = []
        self._requeue_counts: dict[str, int] = {}
        self._round_no = 0
        self._summaries: deque[RoundSummary] = deque(maxlen=history_size)
        self._summaries_lock = threading.Lock()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    @property
    def pending_retries(self) -> list[WorkItem]:
        return list(self._retry_queue)

    def recent_summaries(self) -> list[RoundSummary]:
        with self._summaries_lock:
            return list(self._summaries)

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            self._logger.info("Stop requested; finishing the current window")
        self._stop_event.set()

    def cancel(self) -> None:
        self._logger.warning("Cancel requested; aborting in-flight calls")
        self._cancel_event.set()
        self._stop_event.set()

    def run(self, *, max_rounds: int | None = None, stop_when_drained: bool = False) -> list[RoundSummary]:
        summaries: list[RoundSummary] = []
        while not self._stop_event.is_set():
            if max_rounds is not None and len(summaries) >= max_rounds:
                break
            try:
                items = self._next_round_items()
            except Exception as exc:
                self._logger.error(
                    "Failed to fetch pending work | error=%s | retry_in=%ss", exc, self._error_delay_seconds
                )
                self._sleep(self._error_delay_seconds)
                continue

            if not items:
                if stop_when_drained:
                    self._logger.info("No pending work left; stopping")
                    break
                self._logger.info("No pending work | sleeping=%ss", self._idle_delay_seconds)
                self._sleep(self._idle_delay_seconds)
                continue

            summaries.append(self.run_round(items))
            if self._stop_event.is_set():
                break
            self._sleep(self._round_delay_seconds)

        self._logger.info("Scheduler stopped | rounds=%d", len(summaries))
        return summaries

    def run_round(self, items: Sequence[WorkItem]) -> RoundSummary:
        self._round_no += 1
        round_no = self._round_no
        round_windows = windows(items, self._concurrency)
        self._logger.info(
            "Round %d started | items=%d | windows=%d | concurrency=%d",
            round_no,
            len(items),
            len(round_windows),
            self._concurrency,
        )

        results: list[ItemResult] = []
        window_sizes: list[int] = []
        with ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="exam-worker") as executor:
            for index, window in enumerate(round_windows, start=1):
                if self._stop_event.is_set():
                    self._logger.info(
                        "Stop observed before window %d/%d | skipped_items=%d",
                        index,
                        len(round_windows),
                        sum(len(rest) for rest in round_windows[index - 1 :]),
                    )
                    break
                futures = [executor.submit(self._process_one, item) for item in window]
                wait(futures)
                window_sizes.append(len(window))
                results.extend(future.result() for future in futures)

        results = self._apply_requeue_limit(results)
        retry_queue = tuple(result.item for result in results if result.status is ItemStatus.RETRY)
        self._retry_queue = list(retry_queue)
        summary = RoundSummary(
            round_no=round_no,
            processed=len(results),
            successful=sum(1 for result in results if result.status is ItemStatus.SUCCEEDED),
            failed=sum(1 for result in results if result.status in (ItemStatus.FAILED, ItemStatus.RETRY)),
            cancelled=sum(1 for result in results if result.status is ItemStatus.CANCELLED),
            retry_queue=retry_queue,
            window_sizes=tuple(window_sizes),
        )
        with self._summaries_lock:
            self._summaries.append(summary)
        self._logger.info(
            "Round %d complete | processed=%d | successful=%d | failed=%d | cancelled=%d | retry_queue=%d",
            summary.round_no,
            summary.processed,
            summary.successful,
            summary.failed,
            summary.cancelled,
            summary.retry_count,
        )
        if self._on_round_complete is not None:
            try:
                self._on_round_complete(summary)
            except Exception as exc:
                self._logger.warning("Round summary callback failed: %s", exc)
        return summary

    def _process_one(self, item: WorkItem) -> ItemResult:
        try:
            outcome = self._process_item(item, self._cancel_event)
        except Exception as exc:
            self._logger.exception("Unexpected error while processing item | item=%s", item.id)
            return ItemResult(item=item, status=ItemStatus.FAILED, error_message=str(exc))

        if outcome.status is CallStatus.CANCELLED:
            return ItemResult(
                item=item, status=ItemStatus.CANCELLED, attempts=outcome.attempts, error_message=outcome.error_message
            )
        if not outcome.ok:
            status = ItemStatus.RETRY if outcome.retryable else ItemStatus.FAILED
            self._logger.warning(
                "Item failed | item=%s | kind=%s | requeue=%s | error=%s",
                item.id,
                outcome.error_kind.value if outcome.error_kind else None,
                status is ItemStatus.RETRY,
                (outcome.error_message or "")[:200],
            )
            return ItemResult(item=item, status=status, attempts=outcome.attempts, error_message=outcome.error_message)

        try:
            self._result_sink.persist(item, outcome.value)
        except Exception as exc:
            self._logger.error("Failed to persist result; will retry next round | item=%s | error=%s", item.id, exc)
            return ItemResult(item=item, status=ItemStatus.RETRY, attempts=outcome.attempts, error_message=str(exc))
        self._logger.info("Item completed | item=%s | attempts=%d", item.id, outcome.attempts)
        return ItemResult(item=item, status=ItemStatus.SUCCEEDED, attempts=outcome.attempts)

    def _apply_requeue_limit(self, results: list[ItemResult]) -> list[ItemResult]:
        if self._max_requeues is None:
            return results
        limited: list[ItemResult] = []
        for result in results:
            item_id = result.item.id
            if result.status is not ItemStatus.RETRY:
                self._requeue_counts.pop(item_id, None)
                limited.append(result)
                continue
            count = self._requeue_counts.get(item_id, 0) + 1
            if count > self._max_requeues:
                self._requeue_counts.pop(item_id, None)
                self._logger.error(
                    "Item still failing after %d requeues; giving up | item=%s | error=%s",
                    self._max_requeues,
                    item_id,
                    (result.error_message or "")[:200],
                )
                limited.append(replace(result, status=ItemStatus.FAILED))
                continue
            self._requeue_counts[item_id] = count
            limited.append(result)
        return limited

    def _next_round_items(self) -> list[WorkItem]:
        items = list(self._retry_queue)
        remaining = self._batch_size - len(items)
        if remaining > 0:
            batch = self._work_source.fetch_pending(remaining)
            seen = {item.id for item in items}
            for item in batch.items:
                if item.id in seen:
                    continue
                seen.add(item.id)
                items.append(item)
        self._retry_queue = []
        return items

    def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)
