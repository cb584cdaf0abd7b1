"""Integration tests for S3ArchiveStore against a real S3 endpoint.

These tests are marked with @pytest.mark.s3 and require S3 configuration
via WARREN_TEST_S3_* environment variables.  Each test uses unique keys and
cleans up after itself.

Required env vars:
    WARREN_TEST_S3_ENDPOINT
    WARREN_TEST_S3_BUCKET
    WARREN_TEST_S3_ACCESS_KEY
    WARREN_TEST_S3_SECRET_KEY
"""

from __future__ import annotations

import os
import uuid

import pytest

from warren.workspace_runtime.container.streams import gunzip_chunks, gzip_chunks
from warren.workspace_runtime.store.base import archive_key
from warren.workspace_runtime.store.s3 import S3ArchiveStore

# -- Read S3 configuration from environment -----------------------------------
_S3_ENDPOINT = os.environ.get("WARREN_TEST_S3_ENDPOINT")
_S3_BUCKET = os.environ.get("WARREN_TEST_S3_BUCKET")
_S3_ACCESS_KEY = os.environ.get("WARREN_TEST_S3_ACCESS_KEY")
_S3_SECRET_KEY = os.environ.get("WARREN_TEST_S3_SECRET_KEY")

_s3_configured = all([_S3_ENDPOINT, _S3_BUCKET, _S3_ACCESS_KEY, _S3_SECRET_KEY])
_skip_reason = (
    "S3 tests require WARREN_TEST_S3_ENDPOINT, WARREN_TEST_S3_BUCKET, "
    "WARREN_TEST_S3_ACCESS_KEY, WARREN_TEST_S3_SECRET_KEY"
)

pytestmark = [pytest.mark.s3, pytest.mark.skipif(not _s3_configured, reason=_skip_reason)]


@pytest.fixture
async def s3_store() -> S3ArchiveStore:
    assert _S3_ENDPOINT and _S3_BUCKET and _S3_ACCESS_KEY and _S3_SECRET_KEY
    store = S3ArchiveStore(
        bucket=_S3_BUCKET,
        endpoint_url=_S3_ENDPOINT,
        access_key=_S3_ACCESS_KEY,
        secret_key=_S3_SECRET_KEY,
        path_style=True,
    )
    await store.ensure_bucket()
    return store


@pytest.fixture
def project_id() -> str:
    return f"test-{uuid.uuid4().hex[:8]}"


async def test_upload_and_iter(s3_store: S3ArchiveStore, project_id: str) -> None:
    key = archive_key(project_id, 1)
    payload = b"tar bytes " * 10_000
    try:
        location = await s3_store.upload(key, gzip_chunks([payload]))
        assert location.endswith(f"/{_S3_BUCKET}/{key}")
        assert await s3_store.exists(key) is True
        assert b"".join(gunzip_chunks(s3_store.iter_object(key))) == payload
    finally:
        await s3_store.delete(key)


async def test_exists_missing(s3_store: S3ArchiveStore, project_id: str) -> None:
    assert await s3_store.exists(archive_key(project_id, 2)) is False


async def test_iter_missing_raises(s3_store: S3ArchiveStore, project_id: str) -> None:
    with pytest.raises(FileNotFoundError):
        next(s3_store.iter_object(archive_key(project_id, 3)))


async def test_delete_is_idempotent(s3_store: S3ArchiveStore, project_id: str) -> None:
    key = archive_key(project_id, 4)
    await s3_store.upload(key, [b"x"])
    await s3_store.delete(key)
    await s3_store.delete(key)
    assert await s3_store.exists(key) is False


async def test_ensure_bucket_twice(s3_store: S3ArchiveStore) -> None:
    await s3_store.ensure_bucket()
