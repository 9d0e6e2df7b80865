import base64
import io

import httpx
import pytest
from botocore.exceptions import ClientError

from exam_worker.errors import ConfigError, ValidationError
from exam_worker.services import s3_storage
from exam_worker.services.image_payload import ImagePayloadResolver, parse_data_url

_HASH = "ab" * 32


def _resolver(handler=None, **kwargs) -> ImagePayloadResolver:
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(500)))
    return ImagePayloadResolver(http_client=httpx.Client(transport=transport), **kwargs)


def test_data_url_is_split_into_mime_type_and_data():
    image = parse_data_url("data:image/webp;base64,UklGRg==")

    assert image.mime_type == "image/webp"
    assert image.data == "UklGRg=="


def test_invalid_data_url_is_validation_error():
    with pytest.raises(ValidationError):
        _resolver().resolve("data:image/png,not-base64")


def test_hash_reference_is_fetched_from_cdn():
    requested: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png; charset=binary"})

    image = _resolver(_handler, cdn_url="https://cdn.test/").resolve(_HASH.upper())

    assert requested == [f"https://cdn.test/{_HASH}"]
    assert image.mime_type == "image/png"
    assert base64.b64decode(image.data) == b"\x89PNG"


def test_hash_reference_without_cdn_is_validation_error():
    with pytest.raises(ValidationError):
        _resolver().resolve(_HASH)


def test_client_error_from_url_is_validation_error_but_server_error_propagates():
    def _handler(request: httpx.Request) -> httpx.Response:
        status_code = 404 if request.url.path == "/missing.png" else 502
        return httpx.Response(status_code)

    resolver = _resolver(_handler)

    with pytest.raises(ValidationError):
        resolver.resolve("https://images.test/missing.png")
    with pytest.raises(httpx.HTTPStatusError):
        resolver.resolve("https://images.test/flaky.png")


def test_local_image_file_is_read(tmp_path):
    image_path = tmp_path / "page-1.jpg"
    image_path.write_bytes(b"\xff\xd8\xff")

    image = _resolver().resolve(str(image_path))

    assert image.mime_type == "image/jpeg"
    assert base64.b64decode(image.data) == b"\xff\xd8\xff"


def test_local_non_image_file_is_rejected(tmp_path):
    text_path = tmp_path / "notes.txt"
    text_path.write_text("hello", encoding="utf-8")

    with pytest.raises(ValidationError):
        _resolver().resolve(str(text_path))


def test_unknown_reference_is_validation_error():
    with pytest.raises(ValidationError):
        _resolver().resolve("ftp://somewhere/image.png")


def test_storage_key_is_read_through_s3_client():
    calls: list[dict] = []

    class _FakeS3Client:
        def get_object(self, **kwargs):
            calls.append(kwargs)
            return {"Body": io.BytesIO(b"png-bytes"), "ContentType": "image/png"}

    factory_calls: list[int] = []

    def _factory():
        factory_calls.append(1)
        return _FakeS3Client()

    resolver = _resolver(s3_client_factory=_factory)
    first = resolver.resolve("r2://exam-images/pages/p1.png")
    resolver.resolve("s3://exam-images/pages/p2.png")

    assert calls[0] == {"Bucket": "exam-images", "Key": "pages/p1.png"}
    assert base64.b64decode(first.data) == b"png-bytes"
    assert factory_calls == [1]


def test_missing_storage_object_is_validation_error():
    class _FakeS3Client:
        def get_object(self, **kwargs):
            del kwargs
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")

    resolver = _resolver(s3_client_factory=_FakeS3Client)

    with pytest.raises(ValidationError):
        resolver.resolve("s3://exam-images/gone.png")


def test_bad_storage_key_is_validation_error():
    with pytest.raises(ValidationError):
        _resolver(s3_client_factory=lambda: None).resolve("s3://bucket-only")


def test_create_s3_client_requires_credentials(monkeypatch):
    monkeypatch.delenv("S3_ACCESS_KEY_ID", raising=False)
    monkeypatch.delenv("S3_SECRET_ACCESS_KEY", raising=False)

    with pytest.raises(ConfigError):
        s3_storage.create_s3_client()


def test_create_s3_client_passes_endpoint(monkeypatch):
    captured: dict = {}

    def _fake_client(service_name, **kwargs):
        captured["service_name"] = service_name
        captured.update(kwargs)
        return object()

    monkeypatch.setenv("S3_ACCESS_KEY_ID", "access")
    monkeypatch.setenv("S3_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("S3_ENDPOINT_URL", "https://account.r2.cloudflarestorage.com")
    monkeypatch.delenv("S3_REGION", raising=False)
    monkeypatch.setattr(s3_storage.boto3, "client", _fake_client)

    s3_storage.create_s3_client()

    assert captured["service_name"] == "s3"
    assert captured["region_name"] == "auto"
    assert captured["endpoint_url"] == "https://account.r2.cloudflarestorage.com"
