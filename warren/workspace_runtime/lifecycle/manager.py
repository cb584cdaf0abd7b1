"""Workspace lifecycle: the entry point every caller goes through.

Transitions::

    inactive --provision / restore--> active --archive--> archiving --> inactive

Everything that changes which container belongs to a project (provision,
reattach, archive, restore) runs under that project's registry lock, so two
concurrent requests for the same project never both create a container.
Lookups of an already registered workspace take no lock.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

import anyio
from loguru import logger

from warren.workspace_runtime.container import completion
from warren.workspace_runtime.context import SessionContext, Workspace, utcnow
from warren.workspace_runtime.errors import (
    RegistryConflictError,
    TransitionError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)
from warren.workspace_runtime.models.enums import WorkspaceStatus
from warren.workspace_runtime.registry import SessionRegistry, ShuttingDownError

if TYPE_CHECKING:
    from warren.workspace_runtime.container.adapter import DockerAdapter
    from warren.workspace_runtime.container.shell import ShellSession
    from warren.workspace_runtime.lifecycle.archive import ArchivePipeline
    from warren.workspace_runtime.managers.projects import ProjectStore
    from warren.workspace_runtime.models.workspace import ExecResult, FileChange, FileEntry, ProjectRecord
    from warren.workspace_runtime.registry import WorkspaceRegistry


class WorkspaceLifecycle:
    """Coordinates the adapter, the project store, the registries and the archive pipeline."""

    def __init__(
        self,
        adapter: DockerAdapter,
        projects: ProjectStore,
        registry: WorkspaceRegistry,
        pipeline: ArchivePipeline,
        sessions: SessionRegistry | None = None,
        *,
        default_image: str,
    ) -> None:
        self._adapter = adapter
        self._projects = projects
        self._registry = registry
        self._pipeline = pipeline
        self.sessions = sessions or SessionRegistry()
        self.default_image = default_image

    @property
    def registry(self) -> WorkspaceRegistry:
        return self._registry

    async def get_project(self, project_id: str) -> ProjectRecord:
        return await self._projects.get(project_id)

    # -- Provisioning ----------------------------------------------------------

    async def get_or_create_workspace(
        self,
        project_id: str,
        image_name: str | None = None,
        *,
        user_id: str | None = None,
    ) -> Workspace:
        """Return the project's live workspace, reattaching, restoring or creating it as needed.

        *user_id* is only used to create the project row when it does not exist
        yet; without it an unknown project raises ``WorkspaceNotFoundError``.
        """
        workspace = self._registry.get(project_id)
        if workspace is not None:
            return workspace
        async with self._registry.lock(project_id):
            workspace = self._registry.get(project_id)
            if workspace is not None:
                return workspace
            return await self._provision(project_id, image_name or self.default_image, user_id)

    async def _provision(self, project_id: str, image_name: str, user_id: str | None) -> Workspace:
        record = await self._load_or_insert(project_id, user_id)

        if record.workspace_status == WorkspaceStatus.ARCHIVING:
            raise RegistryConflictError("provision", f"Project {project_id} is being archived", project_id=project_id)

        if record.workspace_status == WorkspaceStatus.ACTIVE:
            workspace = await self._reattach(project_id)
            if workspace is not None:
                return workspace
            await self._projects.update_status(project_id, WorkspaceStatus.INACTIVE)

        if record.storage_link:
            return await self._pipeline.restore(project_id, image_name)

        await self._adapter.ensure_image(image_name)
        try:
            workspace = await self._adapter.create_workspace(project_id, image_name)
        except WorkspaceExistsError:
            # Never archived, so the leftover container holds the only copy.
            logger.warning("Project {} has an untracked container; reattaching", project_id)
            workspace = await self._adapter.get_workspace(project_id)
        await self._activate(workspace)
        return workspace

    async def _load_or_insert(self, project_id: str, user_id: str | None) -> ProjectRecord:
        try:
            return await self._projects.get(project_id)
        except WorkspaceNotFoundError:
            if user_id is None:
                raise
        logger.info("Creating project {} for user {}", project_id, user_id)
        return await self._projects.insert(project_id, user_id)

    async def _reattach(self, project_id: str) -> Workspace | None:
        try:
            workspace = await self._adapter.get_workspace(project_id)
        except WorkspaceNotFoundError:
            logger.warning("Project {} is active but its container is gone", project_id)
            return None
        logger.info("Reattached to container of {}", project_id)
        await self._projects.update_heartbeat(project_id)
        self._registry.register(workspace)
        return workspace

    async def _activate(self, workspace: Workspace) -> None:
        await self._projects.update_status(workspace.project_id, WorkspaceStatus.ACTIVE)
        await self._projects.update_heartbeat(workspace.project_id)
        self._registry.register(workspace)

    # -- Archive / restore -----------------------------------------------------

    async def archive_workspace(self, project_id: str, *, idle_timeout: float | None = None) -> str | None:
        """Archive the project's workspace and return the archive key.

        With *idle_timeout*, the heartbeat is re-checked under the lock and the
        archive is skipped (``None``) if the project saw activity in the meantime.
        """
        async with self._registry.lock(project_id):
            if idle_timeout is not None:
                record = await self._projects.get(project_id)
                cutoff = utcnow() - timedelta(seconds=idle_timeout)
                if record.last_heartbeat is not None and record.last_heartbeat >= cutoff:
                    logger.info("Skipping archive of {}: heartbeat refreshed", project_id)
                    return None
            return await self._pipeline.archive(project_id)

    async def restore_workspace(self, project_id: str, image_name: str | None = None) -> Workspace:
        async with self._registry.lock(project_id):
            if self._registry.get(project_id) is not None:
                raise RegistryConflictError("restore", f"Project {project_id} already has a live workspace")
            record = await self._projects.get(project_id)
            if record.workspace_status != WorkspaceStatus.INACTIVE:
                raise TransitionError(project_id, record.workspace_status, WorkspaceStatus.ACTIVE)
            return await self._pipeline.restore(project_id, image_name)

    # -- Commands --------------------------------------------------------------

    async def execute(self, container_id: str, argv: list[str], *, stdin: bytes | None = None) -> ExecResult:
        result = await self._adapter.execute(container_id, argv, stdin=stdin)
        await self._touch_container(container_id)
        return result

    async def run_interactive(self, workspace: Workspace, command: str, *, timeout: float | None = None) -> ExecResult:
        """Run *command* in the workspace's persistent shell, reopening the shell if it died."""
        shell = await self._live_shell(workspace)
        result = await completion.run_interactive(shell, command, timeout=timeout)
        await self.touch(workspace.project_id)
        return result

    async def _live_shell(self, workspace: Workspace) -> ShellSession:
        if workspace.shell.usable:
            return workspace.shell
        async with self._registry.lock(workspace.project_id):
            if not workspace.shell.usable:
                logger.info("Reopening shell for {}", workspace.project_id)
                workspace.shell = await self._adapter.open_shell(workspace.container_id)
                workspace.updated_at = utcnow()
        return workspace.shell

    # -- Files -----------------------------------------------------------------

    async def list_files(self, container_id: str, path: str = "") -> list[FileEntry]:
        entries = await self._adapter.list_files(container_id, path)
        await self._touch_container(container_id)
        return entries

    def watch_files(self, container_id: str) -> AsyncIterator[FileChange]:
        return self._adapter.watch_files(container_id)

    # -- Heartbeat -------------------------------------------------------------

    async def touch(self, project_id: str) -> None:
        await self._projects.update_heartbeat(project_id)

    async def _touch_container(self, container_id: str) -> None:
        workspace = self._registry.by_container(container_id)
        if workspace is not None:
            await self.touch(workspace.project_id)

    @asynccontextmanager
    async def keep_alive(self, project_id: str, interval: float = 60.0) -> AsyncIterator[None]:
        """Refresh the heartbeat every *interval* seconds while the block runs."""
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._beat, project_id, interval)
            try:
                yield
            finally:
                tg.cancel_scope.cancel()

    async def _beat(self, project_id: str, interval: float) -> None:
        while True:
            await anyio.sleep(interval)
            try:
                await self.touch(project_id)
            except Exception:
                logger.exception("Heartbeat refresh failed for {}", project_id)

    # -- Sessions --------------------------------------------------------------

    @asynccontextmanager
    async def session(
        self,
        project_id: str,
        user_id: str,
        image_name: str | None = None,
    ) -> AsyncIterator[SessionContext]:
        """Open (or rejoin) the agent session for *project_id*."""
        if self.sessions.is_shutting_down:
            raise ShuttingDownError
        ctx = self.sessions.get(project_id)
        if ctx is None:
            workspace = await self.get_or_create_workspace(project_id, image_name, user_id=user_id)
            ctx = SessionContext(project_id=project_id, user_id=user_id, workspace=workspace)
        ctx = self.sessions.open(ctx)
        try:
            yield ctx
        finally:
            self.sessions.close(project_id)

    async def shutdown(self) -> None:
        """Close every shell.  Containers keep running and are reattached on next start."""
        await self._registry.close_all()
