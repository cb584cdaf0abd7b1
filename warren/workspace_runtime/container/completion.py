"""Command completion protocol for a reused interactive shell.

A shell that stays open between commands never signals "done".  Each command
is therefore followed by an ``echo`` of a one-off marker and ``$?``::

    <command>
    echo __WARREN_DONE_<hex>__$?

The reader accumulates stdout and looks for the marker; the digits right
after it are the exit code.  Marker and digits may arrive split across any
number of reads, so the scan is incremental over the accumulated text, and a
run of digits only counts once something other than a digit follows it (the
echo's newline) or the stream ends.
"""

from __future__ import annotations

import codecs
import re
import uuid

import anyio
from loguru import logger

from warren.workspace_runtime.container.shell import ShellSession
from warren.workspace_runtime.errors import ExecError
from warren.workspace_runtime.models.enums import StreamType
from warren.workspace_runtime.models.workspace import ExecResult

_DIGITS = re.compile(r"\d+")


def new_marker() -> str:
    return f"__WARREN_DONE_{uuid.uuid4().hex[:16]}__"


def wrap_command(command: str, marker: str) -> str:
    """Append the marker echo.

    A newline separates the two instead of ``;`` so that commands ending in
    ``&``, ``;`` or a ``# comment`` stay valid.  ``$?`` still expands to the
    status of the user's last command.
    """
    return f"{command.rstrip()}\necho {marker}$?\n"


class CompletionScanner:
    """Accumulates demultiplexed output until the marker and exit code are seen."""

    def __init__(self, marker: str) -> None:
        self.marker = marker
        self.done = False
        self.exit_code: int | None = None
        self._stdout = ""
        self._stderr = ""
        self._search_from = 0
        self._decoders = {
            StreamType.STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            StreamType.STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    def feed(self, stream: StreamType, payload: bytes) -> None:
        if self.done:
            return
        if stream == StreamType.STDERR:
            self._stderr += self._decoders[StreamType.STDERR].decode(payload)
            return
        self._stdout += self._decoders[StreamType.STDOUT].decode(payload)
        self._scan(final=False)

    def finish(self) -> ExecResult:
        """Close the scan.  Without a marker this is best-effort output and no exit code."""
        if not self.done:
            self._stdout += self._decoders[StreamType.STDOUT].decode(b"", final=True)
            self._stderr += self._decoders[StreamType.STDERR].decode(b"", final=True)
            self._scan(final=True)
        return ExecResult(stdout=self._stdout, stderr=self._stderr, exit_code=self.exit_code)

    def _scan(self, *, final: bool) -> None:
        index = self._stdout.find(self.marker, self._search_from)
        if index == -1:
            # A marker prefix may sit at the end; resume just before it next time.
            self._search_from = max(0, len(self._stdout) - len(self.marker) + 1)
            return
        self._search_from = index

        tail = self._stdout[index + len(self.marker) :]
        match = _DIGITS.match(tail)
        if match is None:
            if final or tail:
                # Marker printed without a status; keep what came before it.
                self._stdout = self._stdout[:index]
                self.done = final or bool(tail)
            return
        if match.end() == len(tail) and not final:
            return

        self.exit_code = int(match.group())
        self._stdout = self._stdout[:index]
        self.done = True


async def run_interactive(
    session: ShellSession,
    command: str,
    *,
    timeout: float | None = None,
    marker: str | None = None,
) -> ExecResult:
    """Run *command* in the persistent shell and wait for its exit code.

    If the shell's stream ends before the marker shows up, the captured output
    is returned with ``exit_code=None``.  On *timeout* the same happens and the
    session is closed: an abandoned read may have swallowed part of a frame, so
    the framing can no longer be trusted.
    """
    marker = marker or new_marker()
    scanner = CompletionScanner(marker)

    async with session.lock:
        if not session.usable:
            raise ExecError("shell_write", "Shell session is closed", exec_id=session.exec_id)
        await session.send(wrap_command(command, marker).encode())

        with anyio.move_on_after(timeout) as scope:
            while not scanner.done:
                chunk = await session.recv()
                if not chunk:
                    logger.warning("Shell {} ended before command completed", session.exec_id)
                    break
                for stream, payload in session.demuxer.feed(chunk):
                    scanner.feed(stream, payload)

        if scope.cancelled_caught:
            logger.warning("Shell command timed out after {}s; closing session {}", timeout, session.exec_id)
            await session.close()

    return scanner.finish()
