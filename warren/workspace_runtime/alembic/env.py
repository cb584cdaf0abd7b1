"""Alembic environment for the ``projects`` schema.

The URL comes from ``-x database_url=...`` when given, else from
``WARREN_DATABASE_URL``.  Migrations run synchronously over psycopg3; the
async engine used at runtime shares the same ``postgresql+psycopg://`` URL.

warren keeps its own version table so it can share a database with other
services, and autogenerate ignores tables it does not model.
"""

from __future__ import annotations

from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import create_engine, pool

from warren.workspace_runtime.db.tables import Base
from warren.workspace_runtime.settings import WarrenSettings

VERSION_TABLE = "warren_alembic_version"

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def get_url() -> str:
    url = context.get_x_argument(as_dictionary=True).get("database_url") or WarrenSettings().database_url
    if not url:
        msg = "No database URL: set WARREN_DATABASE_URL or pass -x database_url=..."
        raise RuntimeError(msg)
    return url.replace("postgresql+asyncpg://", "postgresql+psycopg://")


def include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    """Only tables declared on ``Base`` take part in autogenerate."""
    return not (type_ == "table" and reflected and compare_to is None)


def _configure(**kwargs: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        version_table=VERSION_TABLE,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL (``--sql``) instead of executing it."""
    _configure(url=get_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(get_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
