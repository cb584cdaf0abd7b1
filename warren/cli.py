import click


@click.group()
def main() -> None:
    """Warren - Sandboxed Docker workspaces for coding agents."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from WARREN_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from WARREN_PORT or 8000).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the Workspace Runtime server."""
    import uvicorn

    from warren.workspace_runtime.settings import WarrenSettings

    settings = WarrenSettings()

    uvicorn.run(
        "warren.workspace_runtime.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Drain timeout plus a buffer for closing shells and disposing the pool.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 60,
    )


@main.command("ensure-image")
@click.option("--image", default=None, help="Image tag (default: from WARREN_WORKSPACE_IMAGE).")
def ensure_image(image: str | None) -> None:
    """Build the workspace image unless it already exists."""
    import anyio

    from warren.workspace_runtime.container.adapter import DockerAdapter
    from warren.workspace_runtime.log import setup_logging
    from warren.workspace_runtime.settings import WarrenSettings

    settings = WarrenSettings()
    setup_logging(settings.log_level, json=settings.log_json)
    name = image or settings.workspace_image

    async def run() -> list[str]:
        adapter = DockerAdapter.from_settings(settings)
        try:
            return await adapter.ensure_image(name)
        finally:
            await adapter.close()

    logs = anyio.run(run)
    if logs:
        click.echo(f"Image {name} built.")
    else:
        click.echo(f"Image {name} already present.")


@main.command()
def reclaim() -> None:
    """Run one reclaimer sweep: archive every workspace past its heartbeat timeout."""
    import anyio

    from warren.workspace_runtime.app import connect_docker, create_archive_store
    from warren.workspace_runtime.db.engine import create_engine, create_session_factory
    from warren.workspace_runtime.lifecycle import ArchivePipeline, HeartbeatReclaimer, WorkspaceLifecycle
    from warren.workspace_runtime.log import setup_logging
    from warren.workspace_runtime.managers.projects import SqlProjectStore
    from warren.workspace_runtime.models.enums import ArchiveMode
    from warren.workspace_runtime.registry import WorkspaceRegistry
    from warren.workspace_runtime.settings import WarrenSettings

    settings = WarrenSettings()
    setup_logging(settings.log_level, json=settings.log_json)
    if not settings.database_url:
        raise click.ClickException("WARREN_DATABASE_URL is not set.")

    async def run() -> list[str]:
        engine = create_engine(settings.database_url)
        adapter = await connect_docker(settings)
        try:
            projects = SqlProjectStore(create_session_factory(engine))
            registry = WorkspaceRegistry()
            pipeline = ArchivePipeline(
                adapter,
                create_archive_store(settings),
                projects,
                registry,
                image_name=settings.workspace_image,
                mode=ArchiveMode(settings.archive_mode),
            )
            lifecycle = WorkspaceLifecycle(
                adapter, projects, registry, pipeline, default_image=settings.workspace_image
            )
            reclaimer = HeartbeatReclaimer(
                lifecycle,
                projects,
                timeout=settings.heartbeat_timeout,
                concurrency=settings.reclaim_concurrency,
            )
            return await reclaimer.sweep()
        finally:
            await adapter.close()
            await engine.dispose()

    archived = anyio.run(run)
    click.echo(f"Archived {len(archived)} workspaces.")
    for project_id in archived:
        click.echo(f"  {project_id}")


# ---------------------------------------------------------------------------
# Database management
# ---------------------------------------------------------------------------


def _alembic_config():
    """Build an Alembic Config from the package's alembic.ini.

    Both alembic.ini and the alembic/ directory live inside the package,
    so this works whether running from source or from an installed package.
    """
    from pathlib import Path

    from alembic.config import Config

    ini_path = Path(__file__).parent / "workspace_runtime" / "alembic.ini"
    return Config(str(ini_path))


@main.group()
def db() -> None:
    """Database migration and management commands."""


@db.command()
@click.option("--revision", default="head", help="Target revision (default: head).")
def upgrade(revision: str) -> None:
    """Run database migrations forward."""
    from alembic import command

    command.upgrade(_alembic_config(), revision)
    click.echo(f"Database upgraded to {revision}.")


@db.command()
@click.option("--revision", default="-1", help="Target revision (default: -1, one step back).")
def downgrade(revision: str) -> None:
    """Roll back database migrations."""
    from alembic import command

    command.downgrade(_alembic_config(), revision)
    click.echo(f"Database downgraded to {revision}.")


@db.command()
@click.argument("message")
def migrate(message: str) -> None:
    """Autogenerate a new migration from model changes."""
    from alembic import command

    command.revision(_alembic_config(), message=message, autogenerate=True)
    click.echo(f"Migration generated: {message}")


@db.command()
def current() -> None:
    """Show current database revision."""
    from alembic import command

    command.current(_alembic_config(), verbose=True)


@db.command()
def history() -> None:
    """Show migration history."""
    from alembic import command

    command.history(_alembic_config(), verbose=True)


if __name__ == "__main__":
    main()
