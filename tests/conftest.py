"""PostgreSQL fixtures for ``@pytest.mark.integration`` tests.

One ``postgres:17`` testcontainer serves the whole run.  The schema is built
by the packaged Alembic migrations (the same config ``warren db upgrade``
uses) rather than ``metadata.create_all``, so the migrations are under test
too.  Every test runs inside one outer transaction that is rolled back at
teardown; code under test may commit freely, since its sessions only commit
savepoints.

Requires a Docker daemon.
"""

from __future__ import annotations

import argparse
from collections.abc import AsyncIterator, Iterator

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer

from warren.cli import _alembic_config
from warren.workspace_runtime.db.engine import create_engine
from warren.workspace_runtime.managers.projects import SqlProjectStore


@pytest.fixture(scope="session")
def pg_url() -> Iterator[str]:
    """psycopg3 URL of a migrated, throwaway database."""
    with PostgresContainer(
        image="postgres:17",
        username="warren",
        password="warren",
        dbname="warren_test",
        driver="psycopg",
    ) as pg:
        url = pg.get_connection_url()

        from alembic import command

        cfg = _alembic_config()
        cfg.cmd_opts = argparse.Namespace(x=[f"database_url={url}"])
        command.upgrade(cfg, "head")
        yield url


@pytest.fixture(scope="session")
def async_engine(pg_url: str) -> Iterator[AsyncEngine]:
    engine = create_engine(pg_url, pool_size=2)
    yield engine
    engine.sync_engine.dispose()


@pytest.fixture
async def db_connection(async_engine: AsyncEngine) -> AsyncIterator[AsyncConnection]:
    """Connection holding the per-test outer transaction."""
    async with async_engine.connect() as conn:
        await conn.begin()
        yield conn
        await conn.rollback()


@pytest.fixture
async def db_session(db_connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    """Session for calling the manager functions directly."""
    session = AsyncSession(bind=db_connection, join_transaction_mode="create_savepoint")
    yield session
    await session.close()


@pytest.fixture
def sql_store(db_connection: AsyncConnection) -> SqlProjectStore:
    """``SqlProjectStore`` whose short-lived sessions all join the test transaction."""
    factory = async_sessionmaker(bind=db_connection, join_transaction_mode="create_savepoint", expire_on_commit=False)
    return SqlProjectStore(factory)
