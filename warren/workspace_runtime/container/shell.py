"""Persistent interactive shell bound to a workspace container.

A ``ShellSession`` owns the hijacked exec socket of a long-lived ``/bin/bash``
process.  Socket I/O is blocking, so every send/recv runs in the anyio worker
thread pool.  The frame demuxer lives on the session rather than per command:
a frame may straddle the read that completed one command and the next read.
"""

from __future__ import annotations

import asyncio
import contextlib
from functools import partial
from typing import Any

from anyio import to_thread
from loguru import logger

from warren.workspace_runtime.container.demux import FrameDemuxer
from warren.workspace_runtime.errors import ExecError

READ_SIZE = 64 * 1024


def raw_socket(handle: Any) -> Any:
    """Return the plain socket behind docker-py's ``SocketIO`` wrapper (or the object itself)."""
    return getattr(handle, "_sock", handle)


class ShellSession:
    """Duplex byte stream to one interactive shell.

    ``lock`` serializes commands: the completion protocol assumes exactly one
    command in flight per shell.
    """

    def __init__(self, exec_id: str, handle: Any, *, tty: bool = False, read_size: int = READ_SIZE) -> None:
        self.exec_id = exec_id
        self._handle = handle
        self._sock = raw_socket(handle)
        self._read_size = read_size
        self.demuxer = FrameDemuxer(tty=tty)
        self.lock = asyncio.Lock()
        self.closed = False
        self.at_eof = False

    @property
    def usable(self) -> bool:
        return not (self.closed or self.at_eof)

    async def send(self, data: bytes) -> None:
        if not self.usable:
            raise ExecError("shell_write", "Shell session is closed", exec_id=self.exec_id)
        try:
            await to_thread.run_sync(self._sock.sendall, data)
        except OSError as exc:
            raise ExecError("shell_write", f"Writing to shell failed: {exc}", exec_id=self.exec_id) from exc

    async def recv(self) -> bytes:
        """Read the next chunk.  ``b""`` means the shell process exited."""
        if self.closed:
            return b""
        try:
            chunk = await to_thread.run_sync(partial(self._sock.recv, self._read_size), abandon_on_cancel=True)
        except OSError as exc:
            if self.closed:
                return b""
            raise ExecError("shell_read", f"Reading from shell failed: {exc}", exec_id=self.exec_id) from exc
        if not chunk:
            self.at_eof = True
        return chunk

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await to_thread.run_sync(self._close)
        logger.debug("Shell session {} closed", self.exec_id)

    def _close(self) -> None:
        with contextlib.suppress(OSError):
            self._sock.close()
        if self._handle is not self._sock:
            with contextlib.suppress(OSError):
                self._handle.close()
