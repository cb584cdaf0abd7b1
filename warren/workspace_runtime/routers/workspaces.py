"""Workspace endpoints (RPC-style).

Thin HTTP adapter over ``WorkspaceLifecycle``.  All state-changing operations
use POST; reads use GET.  Typed runtime errors are mapped to status codes by
the app-level exception handler.

``/watch`` is a WebSocket that pushes file changes and serves file and
terminal requests for one project.
"""

from __future__ import annotations

import contextlib
from typing import Any

import anyio
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from loguru import logger

from warren.workspace_runtime.deps import Lifecycle
from warren.workspace_runtime.edit import EditError
from warren.workspace_runtime.errors import WarrenError
from warren.workspace_runtime.lifecycle.manager import WorkspaceLifecycle
from warren.workspace_runtime.models.api import (
    ArchiveResponse,
    ExecRequest,
    ShellRequest,
    WorkspaceEnsure,
    WorkspaceResponse,
)
from warren.workspace_runtime.models.enums import ChangeKind
from warren.workspace_runtime.models.workspace import ExecResult, FileEntry, ProjectRecord
from warren.workspace_runtime.registry import ShuttingDownError
from warren.workspace_runtime.tools import WorkspaceTools

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


@router.post("/{project_id}/ensure", response_model=WorkspaceResponse)
async def ensure_workspace(project_id: str, body: WorkspaceEnsure, lifecycle: Lifecycle) -> WorkspaceResponse:
    """Get the live workspace, provisioning or restoring it if needed."""
    workspace = await lifecycle.get_or_create_workspace(project_id, body.image_name, user_id=body.user_id)
    return WorkspaceResponse.model_validate(workspace)


@router.get("/{project_id}/get", response_model=ProjectRecord)
async def get_project(project_id: str, lifecycle: Lifecycle) -> ProjectRecord:
    """Durable state of the project."""
    return await lifecycle.get_project(project_id)


@router.post("/{project_id}/exec", response_model=ExecResult)
async def exec_command(project_id: str, body: ExecRequest, lifecycle: Lifecycle) -> ExecResult:
    """Run one command to completion (no shell)."""
    workspace = await lifecycle.get_or_create_workspace(project_id)
    stdin = body.stdin.encode() if body.stdin is not None else None
    return await lifecycle.execute(workspace.container_id, body.argv, stdin=stdin)


@router.post("/{project_id}/shell", response_model=ExecResult)
async def shell_command(project_id: str, body: ShellRequest, lifecycle: Lifecycle) -> ExecResult:
    """Run a command line in the project's persistent shell."""
    workspace = await lifecycle.get_or_create_workspace(project_id)
    return await lifecycle.run_interactive(workspace, body.command, timeout=body.timeout)


@router.get("/{project_id}/files", response_model=list[FileEntry])
async def list_files(
    project_id: str,
    lifecycle: Lifecycle,
    path: str = Query("", description="Directory relative to the workspace root."),
) -> list[FileEntry]:
    workspace = await lifecycle.get_or_create_workspace(project_id)
    return await lifecycle.list_files(workspace.container_id, path)


@router.post("/{project_id}/heartbeat", status_code=status.HTTP_204_NO_CONTENT)
async def heartbeat(project_id: str, lifecycle: Lifecycle) -> None:
    await lifecycle.touch(project_id)


@router.post("/{project_id}/archive", response_model=ArchiveResponse)
async def archive_workspace(project_id: str, lifecycle: Lifecycle) -> ArchiveResponse:
    key = await lifecycle.archive_workspace(project_id)
    return ArchiveResponse(project_id=project_id, storage_link=key or "")


@router.post("/{project_id}/restore", response_model=WorkspaceResponse)
async def restore_workspace(project_id: str, lifecycle: Lifecycle) -> WorkspaceResponse:
    workspace = await lifecycle.restore_workspace(project_id)
    return WorkspaceResponse.model_validate(workspace)


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


@router.websocket("/{project_id}/watch")
async def watch_workspace(websocket: WebSocket, project_id: str) -> None:
    """File-change push channel plus file / terminal requests.

    Server messages: ``initial_files``, ``file_changed``, ``file_content``,
    ``file_written``, ``terminal_output``, ``error``.
    Client messages: ``list_files``, ``read_file``, ``write_file``,
    ``terminal_input``.
    """
    await websocket.accept()
    lifecycle: WorkspaceLifecycle | None = websocket.app.state.lifecycle
    if lifecycle is None:
        await websocket.send_json({"type": "error", "message": "Workspace runtime not configured"})
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    try:
        record = await lifecycle.get_project(project_id)
        async with lifecycle.session(project_id, record.user_id) as ctx:
            await _serve(websocket, lifecycle, WorkspaceTools(lifecycle, ctx))
    except (WarrenError, ShuttingDownError) as exc:
        logger.warning("Watch {}: {}", project_id, exc)
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await websocket.send_json({"type": "error", "message": str(exc) or type(exc).__name__})
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)


async def _serve(websocket: WebSocket, lifecycle: WorkspaceLifecycle, tools: WorkspaceTools) -> None:
    send_lock = anyio.Lock()

    async def send(payload: dict[str, Any]) -> None:
        async with send_lock:
            await websocket.send_json(payload)

    container_id = tools.ctx.workspace.container_id
    entries = await lifecycle.list_files(container_id)
    await send({"type": "initial_files", "files": [entry.model_dump() for entry in entries]})

    async with anyio.create_task_group() as tg:
        tg.start_soon(_forward_changes, lifecycle, tools, send)
        try:
            await _handle_messages(websocket, lifecycle, tools, send)
        finally:
            tg.cancel_scope.cancel()


async def _forward_changes(lifecycle: WorkspaceLifecycle, tools: WorkspaceTools, send: Any) -> None:
    try:
        async for change in lifecycle.watch_files(tools.ctx.workspace.container_id):
            payload: dict[str, Any] = {"type": "file_changed", **change.model_dump(mode="json")}
            if change.kind != ChangeKind.DELETED and not change.is_directory:
                try:
                    payload["content"] = await tools.read_raw(change.path)
                except WarrenError:
                    payload["content"] = None
            await send(payload)
    except WarrenError as exc:
        logger.warning("Watch {}: watcher stopped: {}", tools.ctx.project_id, exc)
        await send({"type": "error", "message": f"File watcher stopped: {exc}"})


async def _handle_messages(
    websocket: WebSocket,
    lifecycle: WorkspaceLifecycle,
    tools: WorkspaceTools,
    send: Any,
) -> None:
    while True:
        try:
            message = await websocket.receive_json()
        except WebSocketDisconnect:
            logger.debug("Watch {}: client disconnected", tools.ctx.project_id)
            return
        except ValueError:
            message = None
        if not isinstance(message, dict):
            await send({"type": "error", "message": "Messages must be JSON objects"})
            continue

        await lifecycle.touch(tools.ctx.project_id)
        try:
            reply = await _dispatch(lifecycle, tools, message)
        except KeyError as exc:
            reply = {"type": "error", "message": f"Missing field: {exc.args[0]}"}
        except (WarrenError, EditError) as exc:
            reply = {"type": "error", "message": str(exc)}
        await send(reply)


async def _dispatch(lifecycle: WorkspaceLifecycle, tools: WorkspaceTools, message: dict[str, Any]) -> dict[str, Any]:
    kind = message.get("type")
    if kind == "terminal_input":
        result = await tools.terminal(message["input"])
        return {"type": "terminal_output", **result.model_dump()}
    if kind == "list_files":
        entries = await lifecycle.list_files(tools.ctx.workspace.container_id, message.get("path", ""))
        return {"type": "initial_files", "files": [entry.model_dump() for entry in entries]}
    if kind == "read_file":
        path = message["path"]
        return {"type": "file_content", "path": path, "content": await tools.read_raw(path)}
    if kind == "write_file":
        path = message["path"]
        await tools.write_file(path, message["content"])
        return {"type": "file_written", "path": path}
    return {"type": "error", "message": f"Unknown message type: {kind}"}
