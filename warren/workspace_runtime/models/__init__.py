"""Data models for the workspace runtime."""

from warren.workspace_runtime.models.api import (
    ArchiveResponse,
    ExecRequest,
    ShellRequest,
    WorkspaceEnsure,
    WorkspaceResponse,
)
from warren.workspace_runtime.models.enums import (
    ArchiveMode,
    ChangeKind,
    StreamType,
    TodoPriority,
    TodoStatus,
    WorkspaceStatus,
)
from warren.workspace_runtime.models.workspace import (
    ExecResult,
    FileChange,
    FileEntry,
    ProjectRecord,
    TodoItem,
)

__all__ = [
    # Enums
    "ArchiveMode",
    # API schemas
    "ArchiveResponse",
    "ChangeKind",
    "ExecRequest",
    # Workspace
    "ExecResult",
    "FileChange",
    "FileEntry",
    "ProjectRecord",
    "ShellRequest",
    "StreamType",
    "TodoItem",
    "TodoPriority",
    "TodoStatus",
    "WorkspaceEnsure",
    "WorkspaceResponse",
    "WorkspaceStatus",
]
