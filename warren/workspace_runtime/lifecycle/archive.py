"""Archive pipeline: snapshot a workspace to object storage, and bring it back.

Archive order is fixed::

    active --CAS--> archiving -> export | gzip | upload -> persist storage_link
           -> stop + remove container -> inactive

The storage link is persisted *before* the container is removed, so a crash
anywhere in between leaves either a running container or a recorded snapshot,
never neither.  Any failure, cancellation included, reverts the project to
``active`` (best effort) and raises ``ArchiveError``; nothing is retried
in-line.

Restore has no persisted intermediate state.  A crash mid-restore leaves the
project ``inactive`` with its link intact, safe to retry.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import anyio
from loguru import logger

from warren.workspace_runtime.container.adapter import archived_image_name
from warren.workspace_runtime.container.streams import gunzip_chunks
from warren.workspace_runtime.errors import (
    ArchiveError,
    RestoreError,
    TransitionError,
    WarrenError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)
from warren.workspace_runtime.models.enums import ArchiveMode, WorkspaceStatus
from warren.workspace_runtime.store.base import ARCHIVE_CONTENT_TYPE, archive_key

if TYPE_CHECKING:
    from warren.workspace_runtime.container.adapter import DockerAdapter
    from warren.workspace_runtime.context import Workspace
    from warren.workspace_runtime.managers.projects import ProjectStore
    from warren.workspace_runtime.registry import WorkspaceRegistry
    from warren.workspace_runtime.store.base import ArchiveStore


def _now_ms() -> int:
    return int(time.time() * 1000)


class ArchivePipeline:
    """Drives archive and restore for one project at a time.

    Callers hold the project's registry lock; the pipeline itself does no locking.
    """

    def __init__(
        self,
        adapter: DockerAdapter,
        store: ArchiveStore,
        projects: ProjectStore,
        registry: WorkspaceRegistry,
        *,
        image_name: str,
        mode: ArchiveMode = ArchiveMode.FILESYSTEM,
    ) -> None:
        self._adapter = adapter
        self._store = store
        self._projects = projects
        self._registry = registry
        self._image_name = image_name
        self.mode = ArchiveMode(mode)

    # -- Archive ---------------------------------------------------------------

    async def archive(self, project_id: str) -> str:
        """Archive the project's workspace.  Returns the new object key."""
        if not await self._projects.update_status(project_id, WorkspaceStatus.ARCHIVING, expected=WorkspaceStatus.ACTIVE):
            record = await self._projects.get(project_id)
            raise TransitionError(project_id, record.workspace_status, WorkspaceStatus.ARCHIVING)

        workspace = self._registry.get(project_id)
        container_ref = workspace.container_id if workspace else project_id
        key = archive_key(project_id, _now_ms())
        logger.info("Archiving {} (mode={}, key={})", project_id, self.mode, key)

        try:
            try:
                location = await self._export_and_upload(container_ref, key)
                logger.info("Archive of {} uploaded to {}", project_id, location)
                await self._projects.update_storage_link(project_id, key)
                await self._adapter.stop_and_remove(container_ref)
            except WorkspaceNotFoundError as exc:
                if await self._forget_vanished(project_id):
                    record = await self._projects.get(project_id)
                    return record.storage_link or ""
                raise ArchiveError("archive", str(exc), project_id=project_id) from exc

            await self._drop_handle(project_id)
            await self._projects.update_status(project_id, WorkspaceStatus.INACTIVE)
        except BaseException as exc:
            # Cancellation included: the sweep never selects an archiving project.
            with anyio.CancelScope(shield=True):
                await self._revert(project_id)
            if isinstance(exc, ArchiveError) or not isinstance(exc, Exception):
                raise
            message = str(exc) if isinstance(exc, WarrenError) else f"{type(exc).__name__}: {exc}"
            raise ArchiveError("archive", message, project_id=project_id) from exc

        logger.info("Archived {}", project_id)
        return key

    async def _export_and_upload(self, container_ref: str, key: str) -> str:
        export = self._adapter.export_container if self.mode is ArchiveMode.IMAGE else self._adapter.export_filesystem
        async with export(container_ref) as chunks:
            return await self._store.upload(key, chunks, ARCHIVE_CONTENT_TYPE)

    async def _forget_vanished(self, project_id: str) -> bool:
        """The container disappeared under an active project.

        If an earlier archive exists it is still the newest snapshot: drop the
        handle and settle on ``inactive``.  Returns ``False`` when there is no
        snapshot to fall back to.
        """
        record = await self._projects.get(project_id)
        if not record.storage_link:
            return False
        logger.warning("Container of {} is gone; keeping previous archive {}", project_id, record.storage_link)
        await self._drop_handle(project_id)
        await self._projects.update_status(project_id, WorkspaceStatus.INACTIVE)
        return True

    async def _revert(self, project_id: str) -> None:
        try:
            await self._projects.update_status(project_id, WorkspaceStatus.ACTIVE, expected=WorkspaceStatus.ARCHIVING)
        except Exception:
            logger.exception("Failed to revert {} to active after archive failure", project_id)

    async def _drop_handle(self, project_id: str) -> None:
        workspace = self._registry.unregister(project_id)
        if workspace is not None:
            await workspace.shell.close()

    # -- Restore ---------------------------------------------------------------

    async def restore(self, project_id: str, image_name: str | None = None) -> Workspace:
        """Provision a container from the project's latest archive and register it."""
        record = await self._projects.get(project_id)
        key = record.storage_link
        if not key:
            raise WorkspaceNotFoundError("archive", project_id)
        if not await self._store.exists(key):
            raise WorkspaceNotFoundError("archive", key)

        logger.info("Restoring {} from {} (mode={})", project_id, key, self.mode)
        if self.mode is ArchiveMode.IMAGE:
            workspace = await self._restore_image(project_id, key)
        else:
            workspace = await self._restore_filesystem(project_id, key, image_name or self._image_name)

        await self._projects.update_status(project_id, WorkspaceStatus.ACTIVE)
        await self._projects.update_heartbeat(project_id)
        self._registry.register(workspace)
        logger.info("Restored {} (container={})", project_id, workspace.container_id)
        return workspace

    async def _restore_filesystem(self, project_id: str, key: str, image_name: str) -> Workspace:
        await self._adapter.ensure_image(image_name)
        workspace = await self._create(project_id, image_name)
        try:
            await self._adapter.import_filesystem(workspace.container_id, gunzip_chunks(self._store.iter_object(key)))
        except Exception as exc:
            await self._discard(workspace)
            if isinstance(exc, RestoreError):
                raise
            raise RestoreError("import", str(exc), project_id=project_id, key=key) from exc
        return workspace

    async def _restore_image(self, project_id: str, key: str) -> Workspace:
        try:
            tags = await self._adapter.load_image(gunzip_chunks(self._store.iter_object(key)))
        except RestoreError:
            raise
        except Exception as exc:
            raise RestoreError("load_image", str(exc), project_id=project_id, key=key) from exc
        logger.debug("Loaded archive image for {}: {}", project_id, tags)
        return await self._create(project_id, archived_image_name(project_id))

    async def _create(self, project_id: str, image_name: str) -> Workspace:
        """Create the container; a leftover container of an inactive project is replaced."""
        try:
            return await self._adapter.create_workspace(project_id, image_name)
        except WorkspaceExistsError:
            logger.warning("Replacing leftover container of inactive project {}", project_id)
            await self._adapter.stop_and_remove(project_id)
            return await self._adapter.create_workspace(project_id, image_name)

    async def _discard(self, workspace: Workspace) -> None:
        await workspace.shell.close()
        try:
            await self._adapter.stop_and_remove(workspace.container_id)
        except WarrenError:
            logger.exception("Failed to remove half-restored container {}", workspace.container_id)
