import os
import re
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from exam_worker.errors import ConfigError


_ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(_ENV_PATH, override=False)

MODEL_IDS = {
    "FLASH": "gemini-3-flash-preview",
    "PRO": "gemini-3-pro-preview",
}


def _get_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _get_int_env(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _get_optional_int_env(name: str) -> int | None:
    if _get_env(name) is None:
        return None
    return _get_int_env(name, 0)


def _get_optional_float_env(name: str) -> float | None:
    if _get_env(name) is None:
        return None
    return _get_float_env(name, 0.0)


def _get_bool_env(name: str, default: bool) -> bool:
    raw = _get_env(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def get_api_base_url() -> str:
    """Return the base URL of the service that hands out and stores work."""
    return _get_env("API_BASE_URL") or "http://localhost:8787"


def get_cdn_url() -> str | None:
    return _get_env("CDN_URL")


def get_gemini_api_base_url() -> str:
    return _get_env("GEMINI_API_BASE_URL") or "https://generativelanguage.googleapis.com/v1beta"


def get_keys_file() -> str:
    return _get_env("KEYS_FILE") or "keys.txt"


def get_gemini_api_keys() -> str | None:
    """Inline key list; takes precedence over KEYS_FILE when set.

    Commas are accepted as separators so the list fits on one env line.
    """
    raw = _get_env("GEMINI_API_KEYS")
    if raw is None:
        return None
    return re.sub(r"\s*,\s*", "\n", raw)


def get_batch_size() -> int:
    return _get_int_env("BATCH_SIZE", 50)


def get_concurrency() -> int:
    return _get_int_env("CONCURRENCY", 5)


def get_initial_delay_ms() -> int:
    return _get_int_env("INITIAL_DELAY_MS", 1000)


def get_max_delay_ms() -> int:
    return _get_int_env("MAX_DELAY_MS", 60000)


def get_retry_base_delay_ms() -> int:
    return _get_int_env("RETRY_BASE_DELAY_MS", 1000)


def get_retry_fixed_delay_ms() -> int:
    return _get_int_env("RETRY_FIXED_DELAY_MS", 2000)


def get_analysis_max_retries() -> int:
    return _get_int_env("MAX_RETRIES_PER_QUESTION", 3)


def get_detection_max_retries() -> int:
    return _get_int_env("DETECTION_MAX_RETRIES", 5)


def get_analysis_model() -> str:
    return _get_env("MODEL_ID") or MODEL_IDS["PRO"]


def get_detection_model() -> str:
    return _get_env("DETECTION_MODEL_ID") or get_analysis_model()


def get_gemini_stream() -> bool:
    return _get_bool_env("GEMINI_STREAM", True)


def get_temperature() -> float | None:
    """Sampling temperature sent with every call; the model default when unset."""
    return _get_optional_float_env("GEMINI_TEMPERATURE")


def get_max_output_tokens() -> int | None:
    return _get_optional_int_env("MAX_OUTPUT_TOKENS")


def get_thinking_budget() -> int | None:
    """Only sent to 2.5 flash models, the ones that accept a budget."""
    return _get_optional_int_env("THINKING_BUDGET")


def get_request_timeout_ms() -> int:
    return _get_int_env("REQUEST_TIMEOUT_MS", 1000 * 60 * 5)


def get_gemini_timeout_ms() -> int:
    return _get_int_env("GEMINI_TIMEOUT_MS", 1000 * 60 * 5)


def get_detect_max_requeues() -> int:
    """Times a local page may be requeued before detect gives up on it."""
    return _get_int_env("DETECT_MAX_REQUEUES", 3)


def get_round_delay_seconds() -> float:
    return _get_float_env("ROUND_DELAY_SECONDS", 5.0)


def get_idle_delay_seconds() -> float:
    return _get_float_env("IDLE_DELAY_SECONDS", 60.0)


def get_error_delay_seconds() -> float:
    return _get_float_env("ERROR_DELAY_SECONDS", 30.0)


def get_log_level() -> str:
    return (_get_env("LOG_LEVEL") or "INFO").upper()


def get_s3_region() -> str:
    return _get_env("S3_REGION") or "auto"


def get_s3_access_key_id() -> str | None:
    return _get_env("S3_ACCESS_KEY_ID")


def get_s3_secret_access_key() -> str | None:
    return _get_env("S3_SECRET_ACCESS_KEY")


def get_s3_session_token() -> str | None:
    return _get_env("S3_SESSION_TOKEN")


def get_s3_endpoint_url() -> str | None:
    return _get_env("S3_ENDPOINT_URL")


@dataclass(frozen=True)
class WorkerSettings:
    api_base_url: str
    cdn_url: str | None
    gemini_api_base_url: str
    keys_file: str
    inline_keys: str | None
    batch_size: int
    concurrency: int
    initial_delay_ms: int
    max_delay_ms: int
    retry_base_delay_ms: int
    retry_fixed_delay_ms: int
    analysis_max_retries: int
    detection_max_retries: int
    analysis_model: str
    detection_model: str
    stream: bool
    temperature: float | None
    max_output_tokens: int | None
    thinking_budget: int | None
    request_timeout_ms: int
    gemini_timeout_ms: int
    detect_max_requeues: int
    round_delay_seconds: float
    idle_delay_seconds: float
    error_delay_seconds: float


def load_worker_settings(**overrides) -> WorkerSettings:
    """Build settings from the environment; non-None overrides win (CLI flags)."""
    values = {
        "api_base_url": get_api_base_url(),
        "cdn_url": get_cdn_url(),
        "gemini_api_base_url": get_gemini_api_base_url(),
        "keys_file": get_keys_file(),
        "inline_keys": get_gemini_api_keys(),
        "batch_size": get_batch_size(),
        "concurrency": get_concurrency(),
        "initial_delay_ms": get_initial_delay_ms(),
        "max_delay_ms": get_max_delay_ms(),
        "retry_base_delay_ms": get_retry_base_delay_ms(),
        "retry_fixed_delay_ms": get_retry_fixed_delay_ms(),
        "analysis_max_retries": get_analysis_max_retries(),
        "detection_max_retries": get_detection_max_retries(),
        "analysis_model": get_analysis_model(),
        "detection_model": get_detection_model(),
        "stream": get_gemini_stream(),
        "temperature": get_temperature(),
        "max_output_tokens": get_max_output_tokens(),
        "thinking_budget": get_thinking_budget(),
        "request_timeout_ms": get_request_timeout_ms(),
        "gemini_timeout_ms": get_gemini_timeout_ms(),
        "detect_max_requeues": get_detect_max_requeues(),
        "round_delay_seconds": get_round_delay_seconds(),
        "idle_delay_seconds": get_idle_delay_seconds(),
        "error_delay_seconds": get_error_delay_seconds(),
    }
    unknown = set(overrides) - set(values)
    if unknown:
        raise ConfigError(f"Unknown setting override(s): {', '.join(sorted(unknown))}")
    values.update({name: value for name, value in overrides.items() if value is not None})

    for name in (
        "batch_size",
        "concurrency",
        "initial_delay_ms",
        "max_delay_ms",
        "analysis_max_retries",
        "detection_max_retries",
    ):
        if values[name] <= 0:
            raise ConfigError(f"{name} must be positive, got {values[name]}")
    if values["max_output_tokens"] is not None and values["max_output_tokens"] <= 0:
        raise ConfigError(f"max_output_tokens must be positive, got {values['max_output_tokens']}")
    if values["thinking_budget"] is not None and values["thinking_budget"] < 0:
        raise ConfigError(f"thinking_budget must not be negative, got {values['thinking_budget']}")
    if values["detect_max_requeues"] < 0:
        raise ConfigError(f"detect_max_requeues must not be negative, got {values['detect_max_requeues']}")
    if values["max_delay_ms"] < values["initial_delay_ms"]:
        raise ConfigError("max_delay_ms must not be smaller than initial_delay_ms")

    return WorkerSettings(**values)
