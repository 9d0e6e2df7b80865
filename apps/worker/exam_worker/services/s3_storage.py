from __future__ import annotations

import boto3
from botocore.client import BaseClient

from exam_worker.config import (
    get_s3_access_key_id,
    get_s3_endpoint_url,
    get_s3_region,
    get_s3_secret_access_key,
    get_s3_session_token,
)
from exam_worker.errors import ConfigError

STORAGE_SCHEMES = ("s3://", "r2://")


def create_s3_client() -> BaseClient:
    access_key = get_s3_access_key_id()
    secret_key = get_s3_secret_access_key()
    if not access_key or not secret_key:
        raise ConfigError("S3 credentials missing: set S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY")

    return boto3.client(
        "s3",
        region_name=get_s3_region(),
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        aws_session_token=get_s3_session_token(),
        endpoint_url=get_s3_endpoint_url(),
    )


def is_storage_key(value: str) -> bool:
    return value.startswith(STORAGE_SCHEMES)


def parse_storage_key(storage_key: str) -> tuple[str, str]:
    if not is_storage_key(storage_key):
        raise ValueError("storage_key must start with s3:// or r2://")
    without_scheme = storage_key.split("://", 1)[1]
    if "/" not in without_scheme:
        raise ValueError("storage_key format must be s3://bucket/key")
    bucket, key = without_scheme.split("/", 1)
    if not bucket or not key:
        raise ValueError("storage_key format must be s3://bucket/key")
    return bucket, key


def get_object_bytes(*, client: BaseClient, bucket: str, key: str) -> tuple[bytes, str | None]:
    response = client.get_object(Bucket=bucket, Key=key)
    body = response["Body"].read()
    return body, response.get("ContentType")
