"""Local filesystem archive store.

Stores archives under a data root::

    {data_root}/workspaces/{project_id}/{timestamp_ms}.tar.gz

Uses ``anyio.to_thread.run_sync`` for non-blocking file I/O.

Writes are atomic: chunks are streamed into a temporary file in the same
directory, which is renamed to the target path once complete.  A crash
mid-upload never leaves a truncated archive under a real key.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from collections.abc import Iterable, Iterator
from functools import partial
from pathlib import Path

from anyio import to_thread

from warren.workspace_runtime.store.base import ARCHIVE_CONTENT_TYPE

_READ_SIZE = 1024 * 1024


class LocalArchiveStore:
    """Local filesystem implementation of the ArchiveStore protocol."""

    def __init__(self, data_root: str | Path) -> None:
        self._base = Path(data_root)

    def _path(self, key: str) -> Path:
        path = (self._base / key).resolve()
        if not path.is_relative_to(self._base.resolve()):
            msg = f"Archive key escapes the data root: {key}"
            raise ValueError(msg)
        return path

    # -- Write -----------------------------------------------------------------

    async def upload(self, key: str, chunks: Iterable[bytes], content_type: str = ARCHIVE_CONTENT_TYPE) -> str:
        path = self._path(key)
        await to_thread.run_sync(partial(_atomic_stream_write, path, chunks))
        return str(path)

    # -- Read ------------------------------------------------------------------

    def iter_object(self, key: str) -> Iterator[bytes]:
        return _read_chunks(self._path(key))

    # -- Utilities -------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        return await to_thread.run_sync(self._path(key).exists)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        await to_thread.run_sync(partial(path.unlink, missing_ok=True))


# -- Sync helpers (run in thread pool) -----------------------------------------


def _atomic_stream_write(path: Path, chunks: Iterable[bytes]) -> None:
    """Stream chunks into a temp file, then rename it over *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            for chunk in chunks:
                f.write(chunk)
        os.rename(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_chunks(path: Path) -> Iterator[bytes]:
    """Yield file contents.  Raises ``FileNotFoundError`` on first ``next()`` if missing."""
    with path.open("rb") as f:
        while chunk := f.read(_READ_SIZE):
            yield chunk
