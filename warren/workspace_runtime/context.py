"""Live in-memory handles.

``Workspace`` pairs a running container with its persistent shell.  It exists
only while the container is registered; the durable view of a project is the
``ProjectRecord`` row.  ``SessionContext`` is the per-session scratch state an
agent carries between tool calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from warren.workspace_runtime.models.workspace import TodoItem

if TYPE_CHECKING:
    from warren.workspace_runtime.container.shell import ShellSession


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Workspace:
    """A provisioned container for one project.

    The container is named after the project, so ``project_id`` is also a
    valid container reference.
    """

    # -- Identity --------------------------------------------------------------
    container_id: str
    project_id: str
    image_name: str

    # -- Live references -------------------------------------------------------
    shell: ShellSession

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    status: str = "running"


@dataclass
class SessionContext:
    """Agent-facing state for one project session.

    Holds the workspace handle plus the agent's scratch values: the commands
    used to serve the project, a free-text description, and a todo list.
    """

    project_id: str
    user_id: str
    workspace: Workspace

    run_command: str | None = None
    build_command: str | None = None
    project_description: str | None = None
    todos: list[TodoItem] = field(default_factory=list)
