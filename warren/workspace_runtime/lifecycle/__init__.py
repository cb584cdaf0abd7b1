"""Workspace lifecycle: provisioning, archive/restore and idle reclamation."""

from warren.workspace_runtime.lifecycle.archive import ArchivePipeline
from warren.workspace_runtime.lifecycle.manager import WorkspaceLifecycle
from warren.workspace_runtime.lifecycle.reclaimer import HeartbeatReclaimer

__all__ = ["ArchivePipeline", "HeartbeatReclaimer", "WorkspaceLifecycle"]
