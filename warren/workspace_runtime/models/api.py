"""API request / response schemas for the workspace endpoints.

These thin schemas sit between HTTP and the lifecycle layer.  Response schemas
serialize live ``Workspace`` handles via ``from_attributes``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class WorkspaceEnsure(BaseModel):
    """Input for getting (or provisioning / restoring) a project's workspace."""

    user_id: str | None = Field(default=None, description="Owner; required only when the project does not exist yet.")
    image_name: str | None = Field(default=None, description="Defaults to the configured workspace image.")


class WorkspaceResponse(BaseModel):
    """Serialized live workspace returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    project_id: str
    container_id: str
    image_name: str
    status: str
    created_at: datetime
    updated_at: datetime


class ArchiveResponse(BaseModel):
    project_id: str
    storage_link: str


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class ExecRequest(BaseModel):
    """One-shot command: argv is passed to the runtime without a shell."""

    argv: list[str] = Field(min_length=1)
    stdin: str | None = None


class ShellRequest(BaseModel):
    """Command line for the workspace's persistent interactive shell."""

    command: str = Field(min_length=1)
    timeout: float | None = Field(default=None, gt=0)
