"""Demultiplexer for the container runtime's exec stream framing.

Without a TTY, stdout and stderr share one connection.  Every frame is::

    +--------+-----------+----------------------+-------------+
    | 1 byte | 3 bytes   | 4 bytes (big-endian) | N bytes     |
    | stream | reserved  | N = payload length   | payload     |
    +--------+-----------+----------------------+-------------+

Reads off the socket do not respect frame boundaries, so ``FrameDemuxer``
buffers a partial header or payload until the rest arrives.  With a TTY the
runtime sends raw bytes, all of which are stdout.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable

from loguru import logger

from warren.workspace_runtime.models.enums import StreamType

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxI")


def encode_frame(stream: StreamType, payload: bytes) -> bytes:
    """Build one frame.  Used by tests and fakes that play the runtime's side."""
    return _HEADER.pack(int(stream), len(payload)) + payload


class FrameDemuxer:
    """Incremental frame decoder.

    ``feed`` accepts arbitrary chunks and returns the frames completed so far,
    in order.  Stream tag 0 (stdin echoed back) is routed to stdout; unknown
    tags are dropped.
    """

    def __init__(self, *, tty: bool = False) -> None:
        self.tty = tty
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Bytes held back waiting for the rest of a frame."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[tuple[StreamType, bytes]]:
        if self.tty:
            return [(StreamType.STDOUT, bytes(chunk))] if chunk else []

        self._buffer.extend(chunk)
        frames: list[tuple[StreamType, bytes]] = []
        while len(self._buffer) >= HEADER_SIZE:
            tag, length = _HEADER.unpack_from(self._buffer)
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                break
            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]

            if tag == StreamType.STDERR:
                frames.append((StreamType.STDERR, payload))
            elif tag in (StreamType.STDOUT, StreamType.STDIN):
                frames.append((StreamType.STDOUT, payload))
            else:
                logger.debug("Demuxer: dropping frame with unknown stream tag {} ({} bytes)", tag, length)
        return frames


def demultiplex(chunks: Iterable[bytes], *, tty: bool = False) -> tuple[bytes, bytes]:
    """Split a complete multiplexed byte stream into ``(stdout, stderr)``."""
    demuxer = FrameDemuxer(tty=tty)
    stdout = bytearray()
    stderr = bytearray()
    for chunk in chunks:
        for stream, payload in demuxer.feed(chunk):
            (stderr if stream == StreamType.STDERR else stdout).extend(payload)
    if demuxer.pending:
        logger.warning("Demuxer: stream ended with {} bytes of an incomplete frame", demuxer.pending)
    return bytes(stdout), bytes(stderr)
