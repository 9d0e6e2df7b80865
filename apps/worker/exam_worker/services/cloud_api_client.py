from __future__ import annotations

import logging
from typing import Any

import httpx

from exam_worker.errors import PersistenceError
from exam_worker.schemas.work_items import PendingBatch, StatsRecord, WorkItem

_ITEM_ID_SEPARATOR = ":"


def build_item_id(exam_id: str, question_id: str) -> str:
    return f"{exam_id}{_ITEM_ID_SEPARATOR}{question_id}"


def split_item_id(item_id: str | None) -> tuple[str | None, str | None]:
    if not item_id:
        return None, None
    exam_id, separator, question_id = item_id.partition(_ITEM_ID_SEPARATOR)
    if not separator:
        return None, item_id
    return exam_id, question_id


class CloudApiClient:
    """Work source, result sink and stats sink backed by the exam cloud API."""

    def __init__(
        self,
        *,
        base_url: str,
        client: httpx.Client | None = None,
        timeout_seconds: float = 300.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._logger = logger or logging.getLogger(__name__)

    def __enter__(self) -> CloudApiClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch_pending(self, limit: int) -> PendingBatch:
        response = self._client.post(f"{self._base_url}/api/pro-analysis/pending", json={"limit": limit})
        response.raise_for_status()
        data = response.json()

        items: list[WorkItem] = []
        for question in data.get("questions") or []:
            item = _work_item_from_question(question)
            if item is None:
                self._logger.warning("Skipping pending question without ids or image | question=%s", question)
                continue
            items.append(item)
        count = data.get("count")
        return PendingBatch(items=items, count=count if isinstance(count, int) and count >= 0 else len(items))

    def persist(self, item: WorkItem, result: Any) -> None:
        exam_id = item.metadata.get("exam_id")
        question_id = item.metadata.get("question_id")
        if exam_id is None or question_id is None:
            exam_id, question_id = split_item_id(item.id)
        try:
            response = self._client.put(
                f"{self._base_url}/api/pro-analysis/update",
                json={"exam_id": exam_id, "question_id": question_id, "pro_analysis": result},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PersistenceError(f"Failed to update pro_analysis: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Failed to update pro_analysis: {exc}") from exc

    def record(self, record: StatsRecord) -> None:
        exam_id, question_id = split_item_id(record.item_id)
        payload = {
            "api_key_prefix": record.credential_mask,
            "success": record.success,
            "error_message": record.error_message,
            "question_id": question_id,
            "exam_id": exam_id,
            "duration_ms": record.duration_ms,
            "model_id": record.model_id,
        }
        try:
            response = self._client.post(f"{self._base_url}/api/key-stats/record", json=payload)
        except httpx.HTTPError as exc:
            self._logger.warning("Failed to record key stats (network): %s", exc)
            return
        if response.is_error:
            self._logger.warning(
                "Failed to record key stats: %s %s | body=%s",
                response.status_code,
                response.reason_phrase,
                response.text[:200],
            )


def _work_item_from_question(question: Any) -> WorkItem | None:
    if not isinstance(question, dict):
        return None
    exam_id = question.get("exam_id")
    question_id = question.get("question_id")
    data_url = question.get("data_url")
    if exam_id in (None, "") or question_id in (None, "") or not data_url:
        return None
    return WorkItem(
        id=build_item_id(str(exam_id), str(question_id)),
        payload_ref=str(data_url),
        metadata={
            "exam_id": str(exam_id),
            "question_id": str(question_id),
            "exam_name": question.get("exam_name"),
            "analysis": question.get("analysis"),
        },
    )
