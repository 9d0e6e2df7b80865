import json

import httpx
import pytest

from exam_worker.config import load_worker_settings
from exam_worker.errors import ErrorKind, MalformedResponseError, ValidationError
from exam_worker.schemas.work_items import WorkItem
from exam_worker.services.image_payload import InlineImage
from exam_worker.services.key_pool import KeyPool
from exam_worker.services.question_analyzer import (
    QuestionAnalyzer,
    parse_analysis_text,
    parse_detection_text,
)

_ANALYSIS = {
    "picture_ok": True,
    "difficulty": 3,
    "question_type": "选择题",
    "tags": ["函数", " 导数 ", ""],
    "question_md": "已知 $f(x)=x^2$，求 $f'(1)$。",
    "solution_md": "$f'(x)=2x$，所以 $f'(1)=2$。",
    "analysis_md": "考查导数的基本运算。",
}


def _gemini_body(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}, "finishReason": "STOP"}]}


class _ListStatsSink:
    def __init__(self):
        self.records = []

    def record(self, record):
        self.records.append(record)


def _analyzer(handler, *, resolve_payload=None, stats_sink=None, **setting_overrides) -> QuestionAnalyzer:
    settings = load_worker_settings(
        **{
            "gemini_api_base_url": "https://gemini.test/v1beta",
            "stream": False,
            "analysis_model": "gemini-test-pro",
            "detection_model": "gemini-test-flash",
            "analysis_max_retries": 2,
            "detection_max_retries": 3,
            **setting_overrides,
        }
    )
    return QuestionAnalyzer(
        key_pool=KeyPool(["key-test-00000001", "key-test-00000002"]),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        resolve_payload=resolve_payload or (lambda ref: InlineImage(mime_type="image/png", data="AAAA")),
        settings=settings,
        stats_sink=stats_sink,
        waiter=lambda cancel_event, seconds: cancel_event.is_set(),
    )


def test_parse_detection_text_coerces_ids_and_accepts_multi_box():
    text = json.dumps(
        [
            {"id": 1, "boxes_2d": [10, 20, 300, 980]},
            {"id": "continuation", "boxes_2d": [[0, 0, 100, 500], [0, 500, 120, 1000]]},
        ]
    )

    questions = parse_detection_text(text)

    assert [question["id"] for question in questions] == ["1", "continuation"]
    assert questions[1]["boxes_2d"][1] == [0, 500, 120, 1000]


def test_parse_detection_text_rejects_object_and_bad_boxes():
    with pytest.raises(MalformedResponseError):
        parse_detection_text('{"id": "1", "boxes_2d": [1, 2, 3, 4]}')
    with pytest.raises(MalformedResponseError):
        parse_detection_text('[{"id": "1", "boxes_2d": [1, 2, 3]}]')
    with pytest.raises(MalformedResponseError):
        parse_detection_text("   ")


def test_parse_analysis_text_recovers_object_from_fenced_text():
    text = "```json\n" + json.dumps(_ANALYSIS, ensure_ascii=False) + "\n```"

    analysis = parse_analysis_text(text)

    assert analysis["difficulty"] == 3
    assert analysis["tags"] == ["函数", "导数"]


def test_parse_analysis_text_reports_failing_field():
    with pytest.raises(MalformedResponseError) as exc_info:
        parse_analysis_text(json.dumps({**_ANALYSIS, "solution_md": "  "}))

    assert "solution_md" in str(exc_info.value)


def test_detect_questions_calls_detection_model():
    paths: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        body = json.loads(request.content)
        assert body["generationConfig"]["responseSchema"]["type"] == "ARRAY"
        return httpx.Response(200, json=_gemini_body('[{"id": "1", "boxes_2d": [1, 2, 3, 4]}]'))

    outcome = _analyzer(_handler).detect_questions("data:image/png;base64,AAAA", item_id="page-1")

    assert outcome.ok
    assert outcome.value == [{"id": "1", "boxes_2d": [1.0, 2.0, 3.0, 4.0]}]
    assert paths == ["/v1beta/models/gemini-test-flash:generateContent"]


def test_generation_settings_reach_the_request_body():
    configs: dict[str, dict] = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        model = request.url.path.rsplit("/", 1)[-1].split(":")[0]
        configs[model] = json.loads(request.content)["generationConfig"]
        if model == "gemini-2.5-flash":
            return httpx.Response(200, json=_gemini_body('[{"id": "1", "boxes_2d": [1, 2, 3, 4]}]'))
        return httpx.Response(200, json=_gemini_body(json.dumps(_ANALYSIS, ensure_ascii=False)))

    analyzer = _analyzer(
        _handler,
        detection_model="gemini-2.5-flash",
        temperature=0.2,
        max_output_tokens=100,
        thinking_budget=2048,
    )

    assert analyzer.detect_questions("data:image/png;base64,AAAA").ok
    assert analyzer.analyze_question("data:image/png;base64,AAAA").ok

    flash = configs["gemini-2.5-flash"]
    assert flash["temperature"] == 0.2
    assert flash["maxOutputTokens"] == 256
    assert flash["thinkingConfig"] == {"thinkingBudget": 2048}
    pro = configs["gemini-test-pro"]
    assert pro["temperature"] == 0.2
    assert "thinkingConfig" not in pro


def test_malformed_analysis_is_retried_with_cached_payload():
    responses = [_gemini_body(""), _gemini_body(json.dumps(_ANALYSIS, ensure_ascii=False))]
    used_keys: list[str] = []
    resolved: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        used_keys.append(request.headers["x-goog-api-key"])
        return httpx.Response(200, json=responses.pop(0))

    def _resolve(ref: str) -> InlineImage:
        resolved.append(ref)
        return InlineImage(mime_type="image/png", data="AAAA")

    sink = _ListStatsSink()
    analyzer = _analyzer(_handler, resolve_payload=_resolve, stats_sink=sink)
    item = WorkItem(id="exam-1:q3", payload_ref="https://cdn.test/q3.png")

    outcome = analyzer.process_analysis(item, cancel_event=None)

    assert outcome.ok
    assert outcome.attempts == 2
    assert outcome.value["question_type"] == "选择题"
    assert resolved == ["https://cdn.test/q3.png"]
    assert used_keys == ["key-test-00000001", "key-test-00000002"]
    assert [(record.success, record.model_id, record.item_id) for record in sink.records] == [
        (False, "gemini-test-pro", "exam-1:q3"),
        (True, "gemini-test-pro", "exam-1:q3"),
    ]


def test_schema_mismatch_exhausts_analysis_budget_as_malformed():
    calls: list[int] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        del request
        calls.append(1)
        return httpx.Response(200, json=_gemini_body(json.dumps({**_ANALYSIS, "difficulty": 9})))

    outcome = _analyzer(_handler).analyze_question("data:image/png;base64,AAAA")

    assert not outcome.ok
    assert outcome.error_kind is ErrorKind.MALFORMED_RESPONSE
    assert not outcome.retryable
    assert len(calls) == 2


def test_unresolvable_payload_fails_without_calling_gemini():
    calls: list[int] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        del request
        calls.append(1)
        return httpx.Response(200, json=_gemini_body("[]"))

    def _resolve(ref: str) -> InlineImage:
        raise ValidationError(f"Unsupported image reference: {ref}")

    outcome = _analyzer(_handler, resolve_payload=_resolve).detect_questions("nowhere")

    assert outcome.error_kind is ErrorKind.FATAL
    assert outcome.attempts == 1
    assert calls == []


def test_rate_limited_analysis_is_requeueable():
    def _handler(request: httpx.Request) -> httpx.Response:
        del request
        return httpx.Response(429, json={"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}})

    outcome = _analyzer(_handler).analyze_question("data:image/png;base64,AAAA")

    assert outcome.error_kind is ErrorKind.RATE_LIMITED
    assert outcome.retryable
    assert outcome.error_message == "Failed after 2 attempts: quota"
