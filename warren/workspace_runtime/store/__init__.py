"""Archive store implementations for workspace archives."""

from warren.workspace_runtime.store.base import ARCHIVE_CONTENT_TYPE, ArchiveStore, archive_key
from warren.workspace_runtime.store.local import LocalArchiveStore

__all__ = ["ARCHIVE_CONTENT_TYPE", "ArchiveStore", "LocalArchiveStore", "archive_key"]
