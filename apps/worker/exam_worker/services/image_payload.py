from __future__ import annotations

import base64
import logging
import mimetypes
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx
from botocore.client import BaseClient
from botocore.exceptions import ClientError

from exam_worker.errors import ValidationError
from exam_worker.services.s3_storage import create_s3_client, get_object_bytes, is_storage_key, parse_storage_key

_DATA_URL_PATTERN = re.compile(r"^data:([^;,]+);base64,(.+)$", re.IGNORECASE | re.DOTALL)
_IMAGE_HASH_PATTERN = re.compile(r"^[a-fA-F0-9]{64}$")
_DEFAULT_MIME_TYPE = "image/png"


@dataclass(frozen=True)
class InlineImage:
    mime_type: str
    data: str


def is_image_hash(value: str) -> bool:
    return bool(_IMAGE_HASH_PATTERN.match(value))


def parse_data_url(value: str) -> InlineImage:
    match = _DATA_URL_PATTERN.match(value.strip())
    if not match:
        raise ValidationError(f"Invalid data URL: {value[:50]}...")
    return InlineImage(mime_type=match.group(1), data=match.group(2))


class ImagePayloadResolver:
    """Turn a work item's payload reference into inline base64 image data.

    Supported references: base64 data URLs, SHA-256 content hashes served by
    the CDN, plain http(s) URLs, ``s3://``/``r2://`` object keys and local
    file paths.
    """

    def __init__(
        self,
        *,
        http_client: httpx.Client,
        cdn_url: str | None = None,
        s3_client_factory: Callable[[], BaseClient] = create_s3_client,
        logger: logging.Logger | None = None,
    ) -> None:
        self._http_client = http_client
        self._cdn_url = cdn_url.rstrip("/") if cdn_url else None
        self._s3_client_factory = s3_client_factory
        self._s3_client: BaseClient | None = None
        self._s3_lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)

    def __call__(self, payload_ref: str) -> InlineImage:
        return self.resolve(payload_ref)

    def resolve(self, payload_ref: str) -> InlineImage:
        ref = (payload_ref or "").strip()
        if not ref:
            raise ValidationError("Empty image reference")
        if ref.lower().startswith("data:"):
            return parse_data_url(ref)
        if is_image_hash(ref):
            if not self._cdn_url:
                raise ValidationError("Image hash reference needs CDN_URL to be configured")
            url = f"{self._cdn_url}/{ref.lower()}"
            self._logger.debug("Fetching image from CDN: %s", url)
            return self._fetch_url(url)
        if ref.startswith(("http://", "https://")):
            return self._fetch_url(ref)
        if is_storage_key(ref):
            return self._fetch_storage_object(ref)
        path = Path(ref)
        if path.is_file():
            return _read_local_file(path)
        raise ValidationError(f"Unsupported image reference: {ref[:50]}")

    def _fetch_url(self, url: str) -> InlineImage:
        response = self._http_client.get(url)
        if 400 <= response.status_code < 500:
            raise ValidationError(f"Failed to fetch image: {response.status_code} {response.reason_phrase}")
        response.raise_for_status()
        mime_type = (response.headers.get("content-type") or _DEFAULT_MIME_TYPE).split(";")[0].strip()
        return InlineImage(
            mime_type=mime_type or _DEFAULT_MIME_TYPE,
            data=base64.b64encode(response.content).decode("ascii"),
        )

    def _fetch_storage_object(self, storage_key: str) -> InlineImage:
        try:
            bucket, key = parse_storage_key(storage_key)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        try:
            body, content_type = get_object_bytes(client=self._get_s3_client(), bucket=bucket, key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "NoSuchBucket", "404", "AccessDenied"}:
                raise ValidationError(f"Image object unavailable ({code}): {storage_key}") from exc
            raise
        mime_type = content_type or mimetypes.guess_type(key)[0] or _DEFAULT_MIME_TYPE
        return InlineImage(mime_type=mime_type, data=base64.b64encode(body).decode("ascii"))

    def _get_s3_client(self) -> BaseClient:
        with self._s3_lock:
            if self._s3_client is None:
                self._s3_client = self._s3_client_factory()
            return self._s3_client


def _read_local_file(path: Path) -> InlineImage:
    mime_type = mimetypes.guess_type(path.name)[0] or _DEFAULT_MIME_TYPE
    if not mime_type.startswith("image/"):
        raise ValidationError(f"Not an image file: {path}")
    return InlineImage(mime_type=mime_type, data=base64.b64encode(path.read_bytes()).decode("ascii"))
