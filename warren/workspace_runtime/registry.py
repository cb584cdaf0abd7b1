"""In-process registries.

``WorkspaceRegistry`` maps project id -> live ``Workspace`` and hands out
per-project locks so that create / archive / restore on one project are
serialized while different projects proceed independently.

``SessionRegistry`` tracks in-flight agent sessions and provides the drain
mechanism used during graceful shutdown.

Both are ephemeral and empty on process restart.  All durable state lives in
PostgreSQL.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from loguru import logger

from warren.workspace_runtime.errors import RegistryConflictError

if TYPE_CHECKING:
    from warren.workspace_runtime.context import SessionContext, Workspace


class ShuttingDownError(RuntimeError):
    """Raised when attempting to open a session during shutdown."""


class WorkspaceRegistry:
    """Live workspace handles keyed by project id.

    Lookups are lock-free.  Callers that mutate a project's entry (provision,
    archive, restore) hold ``lock(project_id)`` around the whole operation.
    """

    def __init__(self) -> None:
        self._workspaces: dict[str, Workspace] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    # -- Locking ---------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, project_id: str) -> AsyncIterator[None]:
        """Exclusive section for one project.  Lock objects are dropped once unused."""
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        self._waiters[project_id] = self._waiters.get(project_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[project_id] -= 1
            if not self._waiters[project_id]:
                del self._waiters[project_id]
                del self._locks[project_id]

    def is_locked(self, project_id: str) -> bool:
        lock = self._locks.get(project_id)
        return lock is not None and lock.locked()

    # -- Mutation --------------------------------------------------------------

    def register(self, workspace: Workspace) -> None:
        """Register a workspace.  Raises ``RegistryConflictError`` if the project already has one."""
        existing = self._workspaces.get(workspace.project_id)
        if existing is not None and existing is not workspace:
            raise RegistryConflictError(
                "register",
                f"Project {workspace.project_id} already has a live workspace",
                project_id=workspace.project_id,
                container_id=existing.container_id,
            )
        logger.debug("Registry: register workspace {} (container={})", workspace.project_id, workspace.container_id)
        self._workspaces[workspace.project_id] = workspace

    def unregister(self, project_id: str) -> Workspace | None:
        workspace = self._workspaces.pop(project_id, None)
        if workspace:
            logger.debug("Registry: unregister workspace {}", project_id)
        return workspace

    # -- Query -----------------------------------------------------------------

    def get(self, project_id: str) -> Workspace | None:
        return self._workspaces.get(project_id)

    def by_container(self, container_id: str) -> Workspace | None:
        for workspace in self._workspaces.values():
            if container_id in (workspace.container_id, workspace.project_id):
                return workspace
        return None

    def all_workspaces(self) -> list[Workspace]:
        """Return a snapshot of all live workspaces."""
        return list(self._workspaces.values())

    @property
    def active_count(self) -> int:
        return len(self._workspaces)

    # -- Lifecycle -------------------------------------------------------------

    async def close_all(self) -> None:
        """Close every shell and forget all handles.  Containers keep running."""
        for workspace in self._workspaces.values():
            await workspace.shell.close()
        self._workspaces.clear()


class SessionRegistry:
    """Registry of open agent sessions, keyed by project id.

    A second request against the same project rejoins the open session
    instead of creating one; ``open`` / ``close`` are reference counted.
    ``wait_until_drained`` blocks until every session has been closed.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionContext] = {}
        self._refs: dict[str, int] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (no sessions).
        self._shutting_down = False

    # -- Mutation --------------------------------------------------------------

    def open(self, ctx: SessionContext) -> SessionContext:
        """Register *ctx*, or return the already open context for its project."""
        if self._shutting_down:
            raise ShuttingDownError
        existing = self._sessions.get(ctx.project_id)
        if existing is not None:
            self._refs[ctx.project_id] += 1
            return existing
        logger.debug("Sessions: open {}", ctx.project_id)
        self._sessions[ctx.project_id] = ctx
        self._refs[ctx.project_id] = 1
        self._drain_event.clear()
        return ctx

    def close(self, project_id: str) -> None:
        if project_id not in self._sessions:
            return
        self._refs[project_id] -= 1
        if self._refs[project_id] <= 0:
            del self._refs[project_id]
            del self._sessions[project_id]
            logger.debug("Sessions: closed {}", project_id)
        if not self._sessions:
            self._drain_event.set()

    # -- Query -----------------------------------------------------------------

    def get(self, project_id: str) -> SessionContext | None:
        return self._sessions.get(project_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New sessions are refused."""
        self._shutting_down = True
        logger.info("Sessions: shutdown initiated, refusing new sessions")
        if not self._sessions:
            self._drain_event.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until all sessions have been closed.

        Returns ``True`` if the registry is empty, ``False`` if *timeout*
        expired with sessions still open.
        """
        if not self._sessions:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Sessions: drain timed out after {}s with {} sessions still open",
                timeout,
                len(self._sessions),
            )
            return False
        else:
            return True
