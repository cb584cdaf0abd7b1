"""FastAPI dependency injection for the workspace lifecycle.

Usage in route handlers::

    @router.post("/{project_id}/ensure")
    async def ensure(project_id: str, lifecycle: Lifecycle) -> WorkspaceResponse:
        ...

The dependency raises HTTP 503 if the runtime was not configured
(WARREN_DATABASE_URL unset).
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from warren.workspace_runtime.lifecycle.manager import WorkspaceLifecycle


async def get_lifecycle(request: Request) -> WorkspaceLifecycle:
    lifecycle: WorkspaceLifecycle | None = request.app.state.lifecycle
    if lifecycle is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workspace runtime not configured (WARREN_DATABASE_URL is unset).",
        )
    return lifecycle


# -- Annotated type aliases for concise route signatures ---------------------

Lifecycle = Annotated[WorkspaceLifecycle, Depends(get_lifecycle)]
"""Annotated dependency: the process-wide workspace lifecycle."""
