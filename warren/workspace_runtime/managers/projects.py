"""Project row operations.

The project row is the durable source of truth for a workspace's lifecycle:
its status, its latest archive key and its heartbeat.  Functions here take an
``AsyncSession`` and commit on success, following the request-scoped pattern
of the API layer.  ``SqlProjectStore`` wraps them with a session factory for
call paths that have no request (lifecycle, reclaimer).

Timestamps are produced in Python (UTC) rather than by the database so that
staleness is judged against the same clock that writes heartbeats.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from loguru import logger
from sqlalchemy import select, update

from warren.workspace_runtime.context import utcnow
from warren.workspace_runtime.db.tables import Project
from warren.workspace_runtime.errors import WorkspaceNotFoundError
from warren.workspace_runtime.models.enums import WorkspaceStatus
from warren.workspace_runtime.models.workspace import ProjectRecord

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class DuplicateProjectError(ValueError):
    """Raised when a project with the given ID already exists."""


# -- Functions (request-scoped) --------------------------------------------------


async def insert_project(
    db: AsyncSession,
    project_id: str,
    user_id: str,
    status: WorkspaceStatus = WorkspaceStatus.INACTIVE,
) -> ProjectRecord:
    """Create a project row.  Raises ``DuplicateProjectError`` if ID exists."""
    if await db.get(Project, project_id) is not None:
        raise DuplicateProjectError(project_id)
    now = utcnow()
    row = Project(
        project_id=project_id,
        user_id=user_id,
        workspace_status=status,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    await db.commit()
    return ProjectRecord.model_validate(row)


async def get_project(db: AsyncSession, project_id: str) -> ProjectRecord:
    """Raises ``WorkspaceNotFoundError`` if missing."""
    row = await db.get(Project, project_id, populate_existing=True)
    if row is None:
        raise WorkspaceNotFoundError("project", project_id)
    return ProjectRecord.model_validate(row)


async def update_status(
    db: AsyncSession,
    project_id: str,
    status: WorkspaceStatus,
    *,
    expected: WorkspaceStatus | None = None,
) -> bool:
    """Set the workspace status.

    With *expected*, the update is a compare-and-set: it only applies while
    the row still has that status, and ``False`` is returned otherwise.
    Raises ``WorkspaceNotFoundError`` if the project does not exist.
    """
    stmt = update(Project).where(Project.project_id == project_id)
    if expected is not None:
        stmt = stmt.where(Project.workspace_status == expected)
    result = await db.execute(stmt.values(workspace_status=status, updated_at=utcnow()))
    await db.commit()
    if result.rowcount:  # type: ignore[attr-defined]
        return True
    if await db.get(Project, project_id) is None:
        raise WorkspaceNotFoundError("project", project_id)
    return False


async def update_heartbeat(db: AsyncSession, project_id: str, at: datetime | None = None) -> None:
    stmt = update(Project).where(Project.project_id == project_id).values(last_heartbeat=at or utcnow())
    result = await db.execute(stmt)
    await db.commit()
    if not result.rowcount:  # type: ignore[attr-defined]
        raise WorkspaceNotFoundError("project", project_id)


async def update_storage_link(db: AsyncSession, project_id: str, key: str) -> None:
    stmt = update(Project).where(Project.project_id == project_id).values(storage_link=key, updated_at=utcnow())
    result = await db.execute(stmt)
    await db.commit()
    if not result.rowcount:  # type: ignore[attr-defined]
        raise WorkspaceNotFoundError("project", project_id)


async def find_stale(db: AsyncSession, timeout: float, *, now: datetime | None = None) -> list[ProjectRecord]:
    """Active projects whose last heartbeat is more than *timeout* seconds old.

    Activation always writes a heartbeat, so a NULL heartbeat never matches.
    """
    cutoff = (now or utcnow()) - timedelta(seconds=timeout)
    stmt = (
        select(Project)
        .where(Project.workspace_status == WorkspaceStatus.ACTIVE)
        .where(Project.last_heartbeat < cutoff)
        .order_by(Project.last_heartbeat.asc())
    )
    result = await db.execute(stmt)
    return [ProjectRecord.model_validate(row) for row in result.scalars().all()]


async def reset_archiving(db: AsyncSession) -> int:
    """Return projects stuck in ``archiving`` to ``active``.

    Called once at startup: an archive interrupted by a crash never reverted
    its status, and ``find_stale`` would otherwise skip the project forever.
    Returns the number of projects reset.
    """
    stmt = (
        update(Project)
        .where(Project.workspace_status == WorkspaceStatus.ARCHIVING)
        .values(workspace_status=WorkspaceStatus.ACTIVE, updated_at=utcnow())
    )
    result = await db.execute(stmt)
    await db.commit()
    count = result.rowcount  # type: ignore[attr-defined]
    if count > 0:
        logger.warning("Startup recovery: reset {} projects stuck in archiving", count)
    return count


# -- Store (session-factory backed) ----------------------------------------------


@runtime_checkable
class ProjectStore(Protocol):
    """Durable project state as consumed by the lifecycle and the reclaimer."""

    async def insert(
        self, project_id: str, user_id: str, status: WorkspaceStatus = WorkspaceStatus.INACTIVE
    ) -> ProjectRecord: ...

    async def get(self, project_id: str) -> ProjectRecord: ...

    async def update_status(
        self, project_id: str, status: WorkspaceStatus, *, expected: WorkspaceStatus | None = None
    ) -> bool: ...

    async def update_heartbeat(self, project_id: str) -> None: ...

    async def update_storage_link(self, project_id: str, key: str) -> None: ...

    async def find_stale(self, timeout: float) -> list[ProjectRecord]: ...


class SqlProjectStore:
    """``ProjectStore`` over PostgreSQL.  Each call runs in its own short session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(
        self, project_id: str, user_id: str, status: WorkspaceStatus = WorkspaceStatus.INACTIVE
    ) -> ProjectRecord:
        async with self._session_factory() as db:
            return await insert_project(db, project_id, user_id, status)

    async def get(self, project_id: str) -> ProjectRecord:
        async with self._session_factory() as db:
            return await get_project(db, project_id)

    async def update_status(
        self, project_id: str, status: WorkspaceStatus, *, expected: WorkspaceStatus | None = None
    ) -> bool:
        async with self._session_factory() as db:
            return await update_status(db, project_id, status, expected=expected)

    async def update_heartbeat(self, project_id: str) -> None:
        async with self._session_factory() as db:
            await update_heartbeat(db, project_id)

    async def update_storage_link(self, project_id: str, key: str) -> None:
        async with self._session_factory() as db:
            await update_storage_link(db, project_id, key)

    async def find_stale(self, timeout: float) -> list[ProjectRecord]:
        async with self._session_factory() as db:
            return await find_stale(db, timeout)

    async def reset_archiving(self) -> int:
        async with self._session_factory() as db:
            return await reset_archiving(db)
