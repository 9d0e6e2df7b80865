from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError as SchemaValidationError

from exam_worker.config import WorkerSettings
from exam_worker.errors import MalformedResponseError
from exam_worker.schemas.analysis import DetectedQuestion, QuestionAnalysis
from exam_worker.schemas.work_items import WorkItem
from exam_worker.services.gemini_client import build_generate_content_payload, generate_content
from exam_worker.services.image_payload import InlineImage
from exam_worker.services.key_pool import CredentialPool
from exam_worker.services.retry_orchestrator import (
    CallOutcome,
    RetryOrchestrator,
    RetryPolicy,
    StatsSink,
    wait_or_cancel,
)

DETECTION_PROMPT = (
    "Analyze this exam page image. It contains several numbered questions.\n"
    "Return ONLY JSON: an array with one entry per question number.\n"
    "Each entry is {id, boxes_2d}; boxes_2d is [ymin, xmin, ymax, xmax] in 0-1000 space, "
    "or a list of such boxes when the question spans columns.\n"
    "Exclude section headings. Include sub-questions, figures and options inside the box.\n"
    'Content continuing a question from a previous column or page gets id "continuation".'
)

ANALYSIS_PROMPT = (
    "Analyze this single exam question image.\n"
    "Return ONLY JSON with: picture_ok (whether the crop is complete), difficulty (1-5), "
    "question_type, tags, question_md (the question in Markdown with LaTeX), "
    "solution_md (a full worked solution) and analysis_md (key ideas and pitfalls)."
)

_DETECTION_RESPONSE_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "id": {"type": "STRING"},
            "boxes_2d": {"type": "ARRAY", "items": {"type": "NUMBER"}},
        },
        "required": ["id", "boxes_2d"],
    },
}

_ANALYSIS_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "picture_ok": {"type": "BOOLEAN"},
        "difficulty": {"type": "INTEGER"},
        "question_type": {"type": "STRING"},
        "tags": {"type": "ARRAY", "items": {"type": "STRING"}},
        "question_md": {"type": "STRING"},
        "solution_md": {"type": "STRING"},
        "analysis_md": {"type": "STRING"},
    },
    "required": [
        "picture_ok",
        "difficulty",
        "question_type",
        "tags",
        "question_md",
        "solution_md",
        "analysis_md",
    ],
}


@dataclass(frozen=True)
class CallKind:
    name: str
    model: str
    prompt: str
    response_schema: dict
    policy: RetryPolicy
    parse: Callable[[str], Any]
    temperature: float | None = None
    max_output_tokens: int | None = None
    thinking_budget: int | None = None


def parse_detection_text(text: str) -> list[dict]:
    data = _load_json_text(text)
    if not isinstance(data, list):
        raise MalformedResponseError("Invalid response format: Expected Array")
    try:
        return [DetectedQuestion.model_validate(item).model_dump() for item in data]
    except SchemaValidationError as exc:
        raise MalformedResponseError(f"Detection schema mismatch: {exc.errors()[0]['msg']}") from exc


def parse_analysis_text(text: str) -> dict:
    try:
        data = _load_json_text(text)
    except MalformedResponseError:
        # Models occasionally wrap the object in prose or code fences.
        match = re.search(r"\{.*\}", text or "", flags=re.DOTALL)
        if not match:
            raise
        data = _load_json_text(match.group(0))
    if not isinstance(data, dict):
        raise MalformedResponseError("Invalid response format: Expected Object")
    try:
        return QuestionAnalysis.model_validate(data).model_dump()
    except SchemaValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "response"
        raise MalformedResponseError(f"Validation failed: Field '{field}' {error['msg']}") from exc


def _load_json_text(text: str) -> Any:
    if not text or not text.strip():
        raise MalformedResponseError("Empty response from AI")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"Un-parseable AI response: {exc.msg}") from exc


class QuestionAnalyzer:
    """Detection and analysis calls, each behind its own retry budget."""

    def __init__(
        self,
        *,
        key_pool: CredentialPool,
        http_client: httpx.Client,
        resolve_payload: Callable[[str], InlineImage],
        settings: WorkerSettings,
        stats_sink: StatsSink | None = None,
        logger: logging.Logger | None = None,
        waiter: Callable[[threading.Event, float], bool] = wait_or_cancel,
    ) -> None:
        self._http_client = http_client
        self._resolve_payload = resolve_payload
        self._base_url = settings.gemini_api_base_url
        self._stream = settings.stream
        self._logger = logger or logging.getLogger(__name__)

        self.detection = CallKind(
            name="detection",
            model=settings.detection_model,
            prompt=DETECTION_PROMPT,
            response_schema=_DETECTION_RESPONSE_SCHEMA,
            policy=_policy_from_settings(settings, max_attempts=settings.detection_max_retries),
            parse=parse_detection_text,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            thinking_budget=settings.thinking_budget,
        )
        self.analysis = CallKind(
            name="analysis",
            model=settings.analysis_model,
            prompt=ANALYSIS_PROMPT,
            response_schema=_ANALYSIS_RESPONSE_SCHEMA,
            policy=_policy_from_settings(settings, max_attempts=settings.analysis_max_retries),
            parse=parse_analysis_text,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            thinking_budget=settings.thinking_budget,
        )
        self._orchestrators = {
            kind.name: RetryOrchestrator(
                key_pool=key_pool,
                policy=kind.policy,
                stats_sink=stats_sink,
                logger=self._logger,
                waiter=waiter,
            )
            for kind in (self.detection, self.analysis)
        }

    def detect_questions(
        self,
        payload_ref: str,
        *,
        item_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CallOutcome:
        return self._run(self.detection, payload_ref, item_id=item_id, cancel_event=cancel_event)

    def analyze_question(
        self,
        payload_ref: str,
        *,
        item_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CallOutcome:
        return self._run(self.analysis, payload_ref, item_id=item_id, cancel_event=cancel_event)

    def process_detection(self, item: WorkItem, cancel_event: threading.Event) -> CallOutcome:
        return self.detect_questions(item.payload_ref, item_id=item.id, cancel_event=cancel_event)

    def process_analysis(self, item: WorkItem, cancel_event: threading.Event) -> CallOutcome:
        return self.analyze_question(item.payload_ref, item_id=item.id, cancel_event=cancel_event)

    def _run(
        self,
        kind: CallKind,
        payload_ref: str,
        *,
        item_id: str | None,
        cancel_event: threading.Event | None,
    ) -> CallOutcome:
        resolved: list[InlineImage] = []

        def call(credential: str) -> Any:
            if not resolved:
                resolved.append(self._resolve_payload(payload_ref))
            payload = build_generate_content_payload(
                image=resolved[0],
                prompt=kind.prompt,
                response_schema=kind.response_schema,
                model=kind.model,
                temperature=kind.temperature,
                max_output_tokens=kind.max_output_tokens,
                thinking_budget=kind.thinking_budget,
            )
            response = generate_content(
                client=self._http_client,
                base_url=self._base_url,
                model=kind.model,
                api_key=credential,
                payload=payload,
                stream=self._stream,
                cancel_event=cancel_event,
                logger=self._logger,
            )
            if response is None:
                return None
            return kind.parse(response.text)

        return self._orchestrators[kind.name].execute(
            call,
            model_id=kind.model,
            item_id=item_id,
            cancel_event=cancel_event,
        )


def _policy_from_settings(settings: WorkerSettings, *, max_attempts: int) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.max_delay_ms,
        fixed_delay_ms=settings.retry_fixed_delay_ms,
    )
