"""Tests for the heartbeat reclaimer."""

from __future__ import annotations

from unittest.mock import AsyncMock

import anyio
import pytest
from sqlalchemy.exc import OperationalError

from warren.workspace_runtime.errors import ArchiveError, TransitionError
from warren.workspace_runtime.lifecycle import HeartbeatReclaimer, WorkspaceLifecycle
from warren.workspace_runtime.models.enums import WorkspaceStatus


async def test_stale_workspace_archived_once(projects) -> None:
    projects.seed("p1", status=WorkspaceStatus.ACTIVE, heartbeat_age=2)
    lifecycle = AsyncMock()
    lifecycle.archive_workspace.return_value = "workspaces/p1/1.tar.gz"

    archived = await HeartbeatReclaimer(lifecycle, projects, timeout=1).sweep()

    assert archived == ["p1"]
    lifecycle.archive_workspace.assert_awaited_once_with("p1", idle_timeout=1)


async def test_fresh_and_inactive_workspaces_ignored(projects) -> None:
    projects.seed("fresh", status=WorkspaceStatus.ACTIVE, heartbeat_age=0)
    projects.seed("idle", status=WorkspaceStatus.INACTIVE, heartbeat_age=5000)
    projects.seed("never", status=WorkspaceStatus.ACTIVE)
    lifecycle = AsyncMock()

    assert await HeartbeatReclaimer(lifecycle, projects, timeout=1).sweep() == []
    lifecycle.archive_workspace.assert_not_awaited()


async def test_skipped_archive_not_counted(projects) -> None:
    projects.seed("p1", status=WorkspaceStatus.ACTIVE, heartbeat_age=2)
    lifecycle = AsyncMock()
    lifecycle.archive_workspace.return_value = None

    assert await HeartbeatReclaimer(lifecycle, projects, timeout=1).sweep() == []


async def test_one_failure_does_not_stop_sweep(projects) -> None:
    for project_id in ("bad", "busy", "good"):
        projects.seed(project_id, status=WorkspaceStatus.ACTIVE, heartbeat_age=10)

    async def archive(project_id: str, *, idle_timeout: float) -> str:
        if project_id == "bad":
            raise ArchiveError("archive", "upload failed")
        if project_id == "busy":
            raise TransitionError(project_id, WorkspaceStatus.ARCHIVING, WorkspaceStatus.ARCHIVING)
        return f"workspaces/{project_id}/1.tar.gz"

    lifecycle = AsyncMock()
    lifecycle.archive_workspace.side_effect = archive

    archived = await HeartbeatReclaimer(lifecycle, projects, timeout=1, concurrency=3).sweep()

    assert archived == ["good"]
    assert lifecycle.archive_workspace.await_count == 3


async def test_sweep_with_real_pipeline(lifecycle: WorkspaceLifecycle, adapter, projects, archive_store) -> None:
    projects.seed("p1")
    await lifecycle.get_or_create_workspace("p1")
    projects.seed("p1", status=WorkspaceStatus.ACTIVE, heartbeat_age=2)

    archived = await HeartbeatReclaimer(lifecycle, projects, timeout=1).sweep()

    assert archived == ["p1"]
    record = await projects.get("p1")
    assert record.workspace_status == WorkspaceStatus.INACTIVE
    assert record.storage_link is not None
    assert await archive_store.exists(record.storage_link)
    assert adapter.removed == ["p1"]
    assert lifecycle.registry.get("p1") is None


async def test_store_error_does_not_abort_other_archives(
    lifecycle: WorkspaceLifecycle, adapter, projects, monkeypatch: pytest.MonkeyPatch
) -> None:
    projects.seed("good")
    await lifecycle.get_or_create_workspace("good")
    projects.seed("good", status=WorkspaceStatus.ACTIVE, heartbeat_age=10)
    projects.seed("bad", status=WorkspaceStatus.ACTIVE, heartbeat_age=10)

    get = projects.get
    update_storage_link = projects.update_storage_link

    async def get_or_fail(project_id: str):
        if project_id == "bad":
            raise OperationalError("SELECT projects", {}, ConnectionError("server closed the connection"))
        return await get(project_id)

    async def slow_update_storage_link(project_id: str, key: str) -> None:
        await anyio.sleep(0.05)
        await update_storage_link(project_id, key)

    monkeypatch.setattr(projects, "get", get_or_fail)
    monkeypatch.setattr(projects, "update_storage_link", slow_update_storage_link)

    archived = await HeartbeatReclaimer(lifecycle, projects, timeout=1, concurrency=2).sweep()

    assert archived == ["good"]
    record = await get("good")
    assert record.workspace_status == WorkspaceStatus.INACTIVE
    assert record.storage_link is not None
    assert adapter.removed == ["good"]
    assert (await get("bad")).workspace_status == WorkspaceStatus.ACTIVE


async def test_background_task_runs_and_stops(projects) -> None:
    projects.seed("p1", status=WorkspaceStatus.ACTIVE, heartbeat_age=2)
    lifecycle = AsyncMock()
    lifecycle.archive_workspace.return_value = "key"
    reclaimer = HeartbeatReclaimer(lifecycle, projects, interval=0.01, timeout=1)

    reclaimer.start()
    with anyio.fail_after(2):
        while not lifecycle.archive_workspace.await_count:
            await anyio.sleep(0.01)
    await reclaimer.stop()

    assert lifecycle.archive_workspace.await_count >= 1
    await reclaimer.stop()
