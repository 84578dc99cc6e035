import asyncio

import pytest

from services.storage.s3 import S3Uploader, StorageError, build_object_key
from services.system.usage import log_usage, sample_usage
from shared.config.recorder import AwsConfig


class FakeS3Client:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = []
        self.presign_args = None

    def upload_file(self, filename, bucket, key):
        if self.fail:
            raise RuntimeError("AccessDenied")
        self.uploads.append((filename, bucket, key))

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        self.presign_args = (operation, Params, ExpiresIn)
        return f"https://{Params['Bucket']}.s3.amazonaws.com/{Params['Key']}?X-Amz-Signature=abc"


def test_upload_returns_presigned_url(tmp_path):
    path = tmp_path / "complete.mp4"
    path.write_bytes(b"video")
    client = FakeS3Client()
    uploader = S3Uploader(AwsConfig(bucket="recordings"), client=client)

    result = asyncio.run(uploader.upload("stream_backup/alpha/t/complete.mp4", path))

    assert client.uploads == [(str(path), "recordings", "stream_backup/alpha/t/complete.mp4")]
    assert client.presign_args[0] == "get_object"
    assert client.presign_args[2] == 7 * 24 * 60 * 60
    assert result.key == "stream_backup/alpha/t/complete.mp4"
    assert result.published_url.startswith("https://recordings.s3.amazonaws.com/")


def test_upload_failure_raises_storage_error(tmp_path):
    path = tmp_path / "chunk.mp4"
    path.write_bytes(b"x")
    uploader = S3Uploader(AwsConfig(bucket="recordings"), client=FakeS3Client(fail=True))

    with pytest.raises(StorageError):
        asyncio.run(uploader.upload("k", path))


def test_uploader_requires_bucket():
    with pytest.raises(StorageError):
        S3Uploader(AwsConfig(bucket=""), client=FakeS3Client())


def test_build_object_key():
    assert build_object_key("stream_backup/", "alpha", "2024-01-01T00-00-00.000Z", "chunk.mp4") == (
        "stream_backup/alpha/2024-01-01T00-00-00.000Z/chunk.mp4"
    )
    assert build_object_key("", "alpha", "f.mp4") == "alpha/f.mp4"


def test_usage_sample_reports_memory():
    usage = sample_usage()
    assert usage.memory_total_mb > 0
    assert 0 <= usage.memory_percent <= 100
    assert log_usage() is not None
