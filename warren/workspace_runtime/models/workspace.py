"""Workspace data models.

``ProjectRecord`` mirrors the durable project row.  The remaining models are
values returned by the container adapter: command output, directory entries
and file-change notifications.

The live, in-memory handle (container + shell) is ``context.Workspace``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from warren.workspace_runtime.models.enums import ChangeKind, TodoPriority, TodoStatus, WorkspaceStatus


class ProjectRecord(BaseModel):
    """Project row (PG)."""

    model_config = ConfigDict(from_attributes=True)

    project_id: str
    user_id: str
    workspace_status: WorkspaceStatus = WorkspaceStatus.INACTIVE
    storage_link: str | None = Field(default=None, description="Object key of the latest archive")
    last_heartbeat: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ExecResult(BaseModel):
    """Captured output of a command.

    ``exit_code`` is ``None`` when the command's completion could not be
    observed (the stream ended or timed out before the exit status arrived).
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class FileEntry(BaseModel):
    """A file or directory inside the workspace, relative to the workspace root."""

    path: str
    name: str
    is_directory: bool


class FileChange(BaseModel):
    """One change notification from the workspace file watcher.

    Carries no content; consumers re-read the file if they need it.
    """

    path: str
    kind: ChangeKind
    is_directory: bool = False


class TodoItem(BaseModel):
    description: str
    status: TodoStatus = TodoStatus.PENDING
    priority: TodoPriority = TodoPriority.MEDIUM
