"""S3 archive store.

Stores archives as objects in an S3 (or S3-compatible) bucket::

    s3://{bucket}/workspaces/{project_id}/{timestamp_ms}.tar.gz

boto3 is blocking, so every call runs through ``anyio.to_thread.run_sync``,
matching LocalArchiveStore.  Uploads go through ``upload_fileobj`` (multipart
for large archives) fed by an ``IterableReader`` over the gzip chunks.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from functools import partial
from typing import Any

import boto3
from anyio import to_thread
from botocore.config import Config
from botocore.exceptions import ClientError
from loguru import logger

from warren.workspace_runtime.container.streams import IterableReader
from warren.workspace_runtime.store.base import ARCHIVE_CONTENT_TYPE

_READ_SIZE = 1024 * 1024


def _create_s3_client(
    endpoint_url: str | None,
    access_key: str | None,
    secret_key: str | None,
    region: str | None = None,
    path_style: bool = False,
) -> Any:
    """Create a boto3 S3 client.

    Args:
        endpoint_url: S3 endpoint URL.  ``None`` uses AWS.
        access_key: AWS access key ID.  ``None`` falls back to boto3's credential chain.
        secret_key: AWS secret access key.
        region: AWS region name (optional, some endpoints require it).
        path_style: Use path-style addressing instead of virtual-hosted.
            Required by MinIO and some S3-compatible services.
    """
    config = Config(
        request_checksum_calculation="when_required",
        response_checksum_validation="when_required",
        s3={"addressing_style": "path" if path_style else "auto"},
    )

    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name=region,
        config=config,
    )


class S3ArchiveStore:
    """S3 implementation of the ArchiveStore protocol."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str | None = None,
        path_style: bool = False,
        client: Any = None,
    ) -> None:
        self._bucket = bucket
        self._endpoint = endpoint_url or "s3://"
        self._client = client or _create_s3_client(
            endpoint_url, access_key, secret_key, region=region, path_style=path_style
        )

    # -- Setup -----------------------------------------------------------------

    async def ensure_bucket(self) -> None:
        """Create the bucket if it does not exist yet."""
        await to_thread.run_sync(self._ensure_bucket)

    def _ensure_bucket(self) -> None:
        try:
            self._client.create_bucket(Bucket=self._bucket)
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise
            logger.debug("S3: bucket {} already exists", self._bucket)
        else:
            logger.info("S3: created bucket {}", self._bucket)

    # -- Write -----------------------------------------------------------------

    async def upload(self, key: str, chunks: Iterable[bytes], content_type: str = ARCHIVE_CONTENT_TYPE) -> str:
        await to_thread.run_sync(
            partial(
                self._client.upload_fileobj,
                IterableReader(chunks),
                self._bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        )
        return f"{self._endpoint.rstrip('/')}/{self._bucket}/{key}"

    # -- Read ------------------------------------------------------------------

    def iter_object(self, key: str) -> Iterator[bytes]:
        """Lazy generator: ``get_object`` and the body reads happen in the consuming thread."""
        try:
            resp = self._client.get_object(Bucket=self._bucket, Key=key)
        except self._client.exceptions.NoSuchKey:
            msg = f"Archive not found: {key}"
            raise FileNotFoundError(msg) from None
        body = resp["Body"]
        try:
            yield from body.iter_chunks(_READ_SIZE)
        finally:
            body.close()

    # -- Utilities -------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        try:
            await to_thread.run_sync(partial(self._client.head_object, Bucket=self._bucket, Key=key))
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        else:
            return True

    async def delete(self, key: str) -> None:
        # S3 delete is idempotent -- no error if key doesn't exist.
        await to_thread.run_sync(partial(self._client.delete_object, Bucket=self._bucket, Key=key))
