from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import boto3

from shared.config.recorder import AwsConfig
from shared.logging.logger import get_logger

log = get_logger("services.storage.s3")


class StorageError(RuntimeError):
    """Raised when an object could not be stored or signed."""


@dataclass
class UploadResult:
    published_url: str
    key: str


def build_object_key(save_path: str, *parts: str) -> str:
    segments = [save_path.strip("/")] + [p.strip("/") for p in parts]
    return "/".join(s for s in segments if s)


class S3Uploader:
    """
    Stores recordings in an S3 bucket and hands back a pre-signed GET URL.

    boto3 is synchronous; both the transfer and the signing run in a worker
    thread so the event loop keeps serving other streams.
    """

    def __init__(self, config: AwsConfig, client: Optional[Any] = None):
        if not config.bucket:
            raise StorageError("AWS_S3_BUCKET is not configured")

        self._config = config
        self._client = client or boto3.client(
            "s3",
            region_name=config.region or None,
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_access_key or None,
        )

    @property
    def bucket(self) -> str:
        return self._config.bucket

    @property
    def save_path(self) -> str:
        return self._config.save_path

    def _upload_sync(self, key: str, local_path: Path) -> str:
        self._client.upload_file(str(local_path), self._config.bucket, key)
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._config.bucket, "Key": key},
            ExpiresIn=self._config.presign_expiry_seconds,
        )

    async def upload(self, key: str, local_path: Path | str) -> UploadResult:
        local_path = Path(local_path)
        log.info(f"Uploading {local_path.name} to s3://{self._config.bucket}/{key}")

        try:
            url = await asyncio.to_thread(self._upload_sync, key, local_path)
        except Exception as e:
            raise StorageError(f"Upload of {local_path.name} to {key} failed: {e}") from e

        log.info(f"Upload complete -> {key}")
        return UploadResult(published_url=url, key=key)
