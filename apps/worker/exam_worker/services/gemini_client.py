from __future__ import annotations

import json
import logging
import threading

import httpx

from exam_worker.errors import GeminiApiError, MalformedResponseError
from exam_worker.services.image_payload import InlineImage
from exam_worker.services.stream_assembler import AssembledResponse, assemble_stream

_RETRY_AFTER_CAP_SECONDS = 60.0


def create_gemini_http_client(*, timeout_seconds: float = 300.0) -> httpx.Client:
    return httpx.Client(
        timeout=timeout_seconds,
        http2=True,
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
    )


def build_generate_content_payload(
    *,
    image: InlineImage,
    prompt: str,
    response_schema: dict,
    model: str,
    temperature: float | None = None,
    max_output_tokens: int | None = None,
    thinking_budget: int | None = None,
) -> dict:
    return {
        "contents": [
            {
                "role": "user",
                "parts": [
                    {
                        "inlineData": {
                            "mimeType": image.mime_type,
                            "data": image.data,
                        }
                    },
                    {"text": prompt},
                ],
            }
        ],
        "generationConfig": build_generation_config(
            model=model,
            response_schema=response_schema,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            thinking_budget=thinking_budget,
        ),
    }


def build_generation_config(
    *,
    model: str,
    response_schema: dict,
    temperature: float | None = None,
    max_output_tokens: int | None = None,
    thinking_budget: int | None = None,
) -> dict:
    generation_config: dict = {
        "responseMimeType": "application/json",
        "responseSchema": response_schema,
        "candidateCount": 1,
    }
    if temperature is not None:
        generation_config["temperature"] = temperature
    if max_output_tokens is not None:
        generation_config["maxOutputTokens"] = _clamp_int(max_output_tokens, lower=256, upper=65536)
    if thinking_budget is not None and _should_include_thinking_budget(model):
        generation_config["thinkingConfig"] = {
            "thinkingBudget": _clamp_int(thinking_budget, lower=0, upper=24576),
        }
    return generation_config


def generate_content(
    *,
    client: httpx.Client,
    base_url: str,
    model: str,
    api_key: str,
    payload: dict,
    stream: bool = True,
    cancel_event: threading.Event | None = None,
    logger: logging.Logger | None = None,
) -> AssembledResponse | None:
    """Perform one Gemini call.

    Streaming goes through ``streamGenerateContent`` so long generations do
    not hit proxy timeouts; the fragments are merged by the assembler.
    Returns None only when ``cancel_event`` fired mid-stream.
    """
    method = "streamGenerateContent" if stream else "generateContent"
    url = f"{base_url.rstrip('/')}/models/{model}:{method}"
    headers = {
        "x-goog-api-key": api_key,
        "Content-Type": "application/json",
    }

    if stream:
        with client.stream("POST", url, headers=headers, json=payload) as response:
            if response.status_code >= 400:
                response.read()
                raise _api_error_from_response(response)
            assembled = assemble_stream(response.iter_text(), cancel_event=cancel_event, logger=logger)
    else:
        response = client.post(url, headers=headers, json=payload)
        if response.status_code >= 400:
            raise _api_error_from_response(response)
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"Invalid JSON response: {response.text[:200]}") from exc
        if not isinstance(data, dict):
            raise MalformedResponseError("Invalid response format: expected JSON object")
        assembled = AssembledResponse.from_payload(data)

    if assembled is not None and assembled.error is not None:
        raise _api_error_from_body(assembled.error, status_code=None, retry_after=None)
    return assembled


def _api_error_from_response(response: httpx.Response) -> GeminiApiError:
    retry_after = _parse_retry_after(response.headers.get("retry-after"))
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        # streamGenerateContent wraps errors in a one-element array
        data = data[0]
    if isinstance(data, dict) and data.get("error") is not None:
        error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
        return _api_error_from_body(error, status_code=response.status_code, retry_after=retry_after)
    message = response.text.strip()[:200] or f"HTTP {response.status_code}"
    return GeminiApiError(message, status_code=response.status_code, retry_after=retry_after)


def _api_error_from_body(error: dict, *, status_code: int | None, retry_after: float | None) -> GeminiApiError:
    code = error.get("code")
    if status_code is None and isinstance(code, int):
        status_code = code
    error_status = error.get("status") if isinstance(error.get("status"), str) else None
    message = str(error.get("message") or error_status or f"HTTP {status_code}")
    return GeminiApiError(message, status_code=status_code, error_status=error_status, retry_after=retry_after)


def _parse_retry_after(retry_after: str | None) -> float | None:
    if retry_after is None:
        return None
    stripped = retry_after.strip()
    if not stripped:
        return None
    try:
        parsed = float(stripped)
    except ValueError:
        return None
    return max(0.0, min(parsed, _RETRY_AFTER_CAP_SECONDS))


def _should_include_thinking_budget(model: str) -> bool:
    model_name = model.strip().lower()
    return "2.5" in model_name and "flash" in model_name


def _clamp_int(value: int, *, lower: int, upper: int) -> int:
    parsed = int(value)
    if parsed < lower:
        return lower
    if parsed > upper:
        return upper
    return parsed
