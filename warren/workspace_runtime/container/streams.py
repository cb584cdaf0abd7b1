"""Blocking byte-stream helpers for archive transfer.

Archives are never held in memory as a whole: the runtime hands out
iterators of tar chunks, these helpers gzip or gunzip them chunk by chunk,
and ``IterableReader`` adapts an iterator to the file-like object that
boto3's managed upload expects.
"""

from __future__ import annotations

import io
import zlib
from collections.abc import Iterable, Iterator

# wbits=31 selects the gzip container (16) with a 32K window (15).
_GZIP_WBITS = 31


def gzip_chunks(chunks: Iterable[bytes], level: int = 6) -> Iterator[bytes]:
    compressor = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)
    for chunk in chunks:
        if not chunk:
            continue
        out = compressor.compress(chunk)
        if out:
            yield out
    yield compressor.flush()


def gunzip_chunks(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Decompress a gzip stream.  Concatenated gzip members are all decoded."""
    decompressor = zlib.decompressobj(_GZIP_WBITS)
    for chunk in chunks:
        while chunk:
            out = decompressor.decompress(chunk)
            if out:
                yield out
            if not decompressor.eof:
                break
            chunk = decompressor.unused_data
            decompressor = zlib.decompressobj(_GZIP_WBITS)
    tail = decompressor.flush()
    if tail:
        yield tail


class IterableReader(io.RawIOBase):
    """Read-only file object over an iterator of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = iter(chunks)
        self._leftover = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[no-untyped-def]
        while not self._leftover:
            try:
                self._leftover = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._leftover))
        buffer[:size] = self._leftover[:size]
        self._leftover = self._leftover[size:]
        return size
