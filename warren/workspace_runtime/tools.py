"""Workspace tools exposed to a coding agent.

``WorkspaceTools`` is bound to one ``SessionContext`` and passed explicitly to
whatever drives the agent; nothing here reads ambient state.  File tools go
through one-shot exec, ``terminal`` goes through the persistent shell so that
``cd`` and exported variables carry over between calls.

Every call refreshes the project's heartbeat, and ``terminal`` keeps it
fresh for as long as the command runs.
"""

from __future__ import annotations

import shlex
from typing import TYPE_CHECKING

from loguru import logger

from warren.workspace_runtime.edit import EditResult, edit_text
from warren.workspace_runtime.errors import ExecError
from warren.workspace_runtime.models.workspace import ExecResult, TodoItem

if TYPE_CHECKING:
    from warren.workspace_runtime.context import SessionContext, Workspace
    from warren.workspace_runtime.lifecycle.manager import WorkspaceLifecycle

# Positional $1 keeps the path out of the script text.
_WRITE_SCRIPT = 'mkdir -p "$(dirname "$1")" && cat > "$1"'


def format_file_content(path: str, content: str) -> str:
    """Render a file with 4-digit line numbers inside ``<path>`` tags."""
    numbered = "\n".join(f"{index:04d} | {line}" for index, line in enumerate(content.split("\n"), start=1))
    return f"<{path}>\n{numbered}\n</{path}>"


class WorkspaceTools:
    def __init__(
        self,
        lifecycle: WorkspaceLifecycle,
        ctx: SessionContext,
        *,
        keep_alive_interval: float = 60.0,
        shell_timeout: float | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self.ctx = ctx
        self._keep_alive_interval = keep_alive_interval
        self._shell_timeout = shell_timeout

    async def _workspace(self) -> Workspace:
        """The live workspace, re-provisioned if it was reclaimed since the session opened."""
        workspace = await self._lifecycle.get_or_create_workspace(self.ctx.project_id, user_id=self.ctx.user_id)
        self.ctx.workspace = workspace
        return workspace

    # -- Shell -----------------------------------------------------------------

    async def terminal(self, command: str, timeout: float | None = None) -> ExecResult:
        logger.info("Tool terminal [{}]: {}", self.ctx.project_id, command)
        workspace = await self._workspace()
        async with self._lifecycle.keep_alive(self.ctx.project_id, self._keep_alive_interval):
            result = await self._lifecycle.run_interactive(workspace, command, timeout=timeout or self._shell_timeout)
        logger.debug("Tool terminal [{}]: exit={}", self.ctx.project_id, result.exit_code)
        return result

    # -- Files -----------------------------------------------------------------

    async def read_raw(self, path: str) -> str:
        """File contents without line numbers."""
        workspace = await self._workspace()
        result = await self._lifecycle.execute(workspace.container_id, ["cat", "--", path])
        if not result.ok:
            raise ExecError("read_file", result.stderr.strip() or f"Cannot read {path}", path=path)
        return result.stdout

    async def read_file(self, path: str) -> str:
        logger.info("Tool read [{}]: {}", self.ctx.project_id, path)
        return format_file_content(path, await self.read_raw(path))

    async def write_file(self, path: str, content: str) -> str:
        """Write *content* to *path*, creating parent directories."""
        logger.info("Tool write [{}]: {} ({} chars)", self.ctx.project_id, path, len(content))
        workspace = await self._workspace()
        result = await self._lifecycle.execute(
            workspace.container_id,
            ["sh", "-c", _WRITE_SCRIPT, "sh", path],
            stdin=content.encode(),
        )
        if not result.ok:
            raise ExecError("write_file", result.stderr.strip() or f"Cannot write {path}", path=path)
        return f"File written successfully to {path}"

    async def edit_file(self, path: str, old: str, new: str, replace_all: bool = False) -> EditResult:
        """Replace a block of *path*; raises ``EditError`` if the block is missing or ambiguous."""
        logger.info("Tool edit [{}]: {}", self.ctx.project_id, path)
        original = await self.read_raw(path)
        result = edit_text(path, original, old, new, replace_all)
        await self.write_file(path, result.content)
        return result

    async def list_dir(self, path: str = ".", flags: str | None = None) -> str:
        workspace = await self._workspace()
        argv = ["ls", *shlex.split(flags or ""), "--", path]
        result = await self._lifecycle.execute(workspace.container_id, argv)
        if not result.ok:
            raise ExecError("list_dir", result.stderr.strip() or f"Cannot list {path}", path=path)
        return result.stdout

    # -- Scratch state ---------------------------------------------------------

    async def write_todos(self, todos: list[TodoItem]) -> str:
        self.ctx.todos = list(todos)
        await self._lifecycle.touch(self.ctx.project_id)
        return f"Todo list updated with {len(todos)} items"

    async def read_todos(self) -> list[TodoItem]:
        await self._lifecycle.touch(self.ctx.project_id)
        return list(self.ctx.todos)

    async def describe_project(self, description: str) -> str:
        self.ctx.project_description = description
        await self._lifecycle.touch(self.ctx.project_id)
        return f"Project described as {description}"

    async def declare_commands(self, run: str, build: str) -> str:
        self.ctx.run_command = run
        self.ctx.build_command = build
        await self._lifecycle.touch(self.ctx.project_id)
        logger.info("Tool serve [{}]: run={!r} build={!r}", self.ctx.project_id, run, build)
        return f"Project served with run command {run} and build command {build}"
