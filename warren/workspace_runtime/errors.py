"""Typed errors raised by the workspace runtime.

Every failure that crosses a component boundary (container adapter, archive
pipeline, lifecycle) is one of these.  Callers branch on the type; the HTTP
layer maps them to status codes and surfaces ``str(error)`` to users.
"""

from __future__ import annotations

from typing import Any


class WarrenError(Exception):
    """Base class.  ``operation`` names the failing step, ``details`` holds context."""

    def __init__(self, operation: str, message: str, **details: Any) -> None:
        super().__init__(message)
        self.operation = operation
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "operation": self.operation, "message": self.message}


class ContainerCreateError(WarrenError):
    """Creating, starting or attaching to a workspace container failed."""


class WorkspaceExistsError(ContainerCreateError):
    """The runtime already has a container named after this project."""

    def __init__(self, name: str) -> None:
        super().__init__("workspace_exists", f"Workspace {name} already exists", name=name)


class BuildFailedError(WarrenError):
    """Building the workspace image failed.  ``logs`` holds the collected build output."""

    def __init__(self, image: str, logs: list[str], reason: str = "build failed") -> None:
        super().__init__("build", f"Image {image}: {reason}", image=image)
        self.logs = logs


class ExecError(WarrenError):
    """Running a command inside a workspace failed at the transport level."""


class ArchiveError(WarrenError):
    """Exporting, uploading or tearing down a workspace during archive failed."""


class RestoreError(WarrenError):
    """Downloading, importing or re-provisioning a workspace during restore failed."""


class WorkspaceNotFoundError(WarrenError, LookupError):
    """A project, container or archive artifact does not exist."""

    def __init__(self, what: str, identifier: str) -> None:
        super().__init__("not_found", f"{what} not found: {identifier}", identifier=identifier)


class RegistryConflictError(WarrenError):
    """A second live handle for the same project would have been registered."""


class TransitionError(WarrenError):
    """The project's durable status does not allow the requested transition."""

    def __init__(self, project_id: str, current: str, wanted: str) -> None:
        super().__init__(
            "transition",
            f"Project {project_id} is {current}; cannot move to {wanted}",
            project_id=project_id,
            current=current,
            wanted=wanted,
        )
