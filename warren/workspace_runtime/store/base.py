"""Archive store interface.

The archive store holds the gzipped workspace archives produced when a
workspace is reclaimed.  PostgreSQL only keeps the object key
(``storage_link``); the heavy payload lives here.

Uploads consume a blocking chunk iterator so the archive is streamed from the
container runtime to storage without being buffered in full.  Downloads are
the mirror image: ``iter_object`` returns a lazy blocking iterator that the
restore path feeds straight back into the runtime.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Protocol, runtime_checkable

ARCHIVE_CONTENT_TYPE = "application/gzip"


def archive_key(project_id: str, timestamp_ms: int) -> str:
    """Object key for one archive of *project_id*.  Each archive gets a fresh key."""
    return f"workspaces/{project_id}/{timestamp_ms}.tar.gz"


@runtime_checkable
class ArchiveStore(Protocol):
    """Async protocol for archive blobs.

    Storage layout (keyed by project):
        {root}/workspaces/{project_id}/{timestamp_ms}.tar.gz
    """

    async def upload(self, key: str, chunks: Iterable[bytes], content_type: str = ARCHIVE_CONTENT_TYPE) -> str:
        """Stream *chunks* to *key*.  Returns a human-readable location for logs."""
        ...

    def iter_object(self, key: str) -> Iterator[bytes]:
        """Blocking iterator over the object's bytes.

        Nothing is fetched until the first ``next()``; ``FileNotFoundError`` is
        raised from there if the key does not exist.  Consume it in a worker
        thread.
        """
        ...

    async def exists(self, key: str) -> bool:
        """Check whether an object exists at *key*."""
        ...

    async def delete(self, key: str) -> None:
        """Delete the object.  No-op if not found."""
        ...
