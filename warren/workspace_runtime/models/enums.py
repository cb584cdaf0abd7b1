"""Shared enumerations used across the workspace runtime."""

from __future__ import annotations

from enum import IntEnum, StrEnum

# -- Project -----------------------------------------------------------------


class WorkspaceStatus(StrEnum):
    """Durable workspace status persisted on the project row."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    ARCHIVING = "archiving"


class ArchiveMode(StrEnum):
    FILESYSTEM = "filesystem"
    IMAGE = "image"


# -- Exec streams --------------------------------------------------------------


class StreamType(IntEnum):
    """Stream tag in the first byte of a multiplexed exec frame."""

    STDIN = 0
    STDOUT = 1
    STDERR = 2


# -- File watching -------------------------------------------------------------


class ChangeKind(StrEnum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


# -- Agent scratch state -------------------------------------------------------


class TodoStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TodoPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
