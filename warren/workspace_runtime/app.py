from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial

from anyio import to_thread
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from loguru import logger

from warren.workspace_runtime.container.adapter import DockerAdapter
from warren.workspace_runtime.db.engine import create_engine, create_session_factory
from warren.workspace_runtime.errors import (
    RegistryConflictError,
    TransitionError,
    WarrenError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)
from warren.workspace_runtime.lifecycle import ArchivePipeline, HeartbeatReclaimer, WorkspaceLifecycle
from warren.workspace_runtime.log import setup_logging
from warren.workspace_runtime.managers.projects import SqlProjectStore
from warren.workspace_runtime.models.enums import ArchiveMode
from warren.workspace_runtime.registry import SessionRegistry, ShuttingDownError, WorkspaceRegistry
from warren.workspace_runtime.retry import retry_async
from warren.workspace_runtime.settings import WarrenSettings, get_settings
from warren.workspace_runtime.store.base import ArchiveStore
from warren.workspace_runtime.store.local import LocalArchiveStore
from warren.workspace_runtime.store.s3 import S3ArchiveStore


def create_archive_store(settings: WarrenSettings) -> ArchiveStore:
    """Create the archive store backend based on configuration."""
    if settings.archive_store == "s3":
        if not settings.s3_bucket:
            msg = "WARREN_S3_BUCKET is required when WARREN_ARCHIVE_STORE=s3"
            raise ValueError(msg)
        return S3ArchiveStore(
            bucket=settings.s3_bucket,
            endpoint_url=settings.s3_endpoint,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key.get_secret_value() if settings.s3_secret_key else None,
            region=settings.s3_region,
            path_style=settings.s3_path_style,
        )
    return LocalArchiveStore(settings.data_root)


async def connect_docker(settings: WarrenSettings) -> DockerAdapter:
    """Create the adapter and wait for the daemon to answer, with backoff."""

    async def attempt() -> DockerAdapter:
        adapter = await to_thread.run_sync(partial(DockerAdapter.from_settings, settings))
        await adapter.ping()
        return adapter

    return await retry_async(
        attempt,
        attempts=settings.startup_retries,
        base_delay=settings.startup_retry_delay,
        what="Docker connection",
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, json=settings.log_json)

    logger.info("Workspace Runtime starting (host={}, port={})", settings.host, settings.port)
    logger.info("Archives: store={} mode={}", settings.archive_store, settings.archive_mode)

    # -- Initialise state fields (always present, possibly None) ----------------
    _app.state.db_engine = None
    _app.state.adapter = None
    _app.state.lifecycle = None
    _app.state.reclaimer = None

    # -- Docker ----------------------------------------------------------------
    adapter = await connect_docker(settings)
    _app.state.adapter = adapter
    logger.info("Docker: connected")

    # -- Database --------------------------------------------------------------
    if settings.database_url:
        engine = create_engine(settings.database_url)
        _app.state.db_engine = engine
        projects = SqlProjectStore(create_session_factory(engine))
        logger.info("PostgreSQL: connected (pool_size=5, max_overflow=10)")

        # Startup recovery: archives interrupted by a crash left projects in archiving.
        await projects.reset_archiving()

        # -- Archive store -----------------------------------------------------
        store = create_archive_store(settings)
        if isinstance(store, S3ArchiveStore):
            await retry_async(
                store.ensure_bucket,
                attempts=settings.startup_retries,
                base_delay=settings.startup_retry_delay,
                what="S3 bucket setup",
            )

        # -- Lifecycle ---------------------------------------------------------
        registry = WorkspaceRegistry()
        pipeline = ArchivePipeline(
            adapter,
            store,
            projects,
            registry,
            image_name=settings.workspace_image,
            mode=ArchiveMode(settings.archive_mode),
        )
        lifecycle = WorkspaceLifecycle(
            adapter,
            projects,
            registry,
            pipeline,
            SessionRegistry(),
            default_image=settings.workspace_image,
        )
        _app.state.lifecycle = lifecycle

        reclaimer = HeartbeatReclaimer(
            lifecycle,
            projects,
            interval=settings.reclaim_interval,
            timeout=settings.heartbeat_timeout,
            concurrency=settings.reclaim_concurrency,
        )
        reclaimer.start()
        _app.state.reclaimer = reclaimer
    else:
        logger.warning("WARREN_DATABASE_URL not set -- workspace endpoints disabled")

    yield

    # -- Shutdown --------------------------------------------------------------
    lifecycle = _app.state.lifecycle
    if lifecycle is not None:
        sessions = lifecycle.sessions
        logger.info("Workspace Runtime shutting down (open_sessions={})", sessions.active_count)

        # 1. Stop accepting new sessions, let open ones finish.
        sessions.begin_shutdown()
        if sessions.active_count > 0:
            timeout = settings.graceful_shutdown_timeout
            logger.info("Waiting for {} open sessions to finish (timeout={}s)...", sessions.active_count, timeout)
            await sessions.wait_until_drained(timeout=timeout)

        # 2. No more reclaiming; containers are left running and reattached on restart.
        await _app.state.reclaimer.stop()
        await lifecycle.shutdown()
        logger.info("Shell sessions closed")

    # Dispose DB engine (closes all pooled connections).
    if _app.state.db_engine is not None:
        await _app.state.db_engine.dispose()
        logger.info("PostgreSQL: disposed")

    await adapter.close()
    logger.info("Docker: closed")


app = FastAPI(title="Warren Workspace Runtime", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Error mapping -- typed runtime errors to HTTP status codes
# ---------------------------------------------------------------------------


def status_for(exc: WarrenError) -> int:
    if isinstance(exc, WorkspaceNotFoundError):
        return 404
    if isinstance(exc, RegistryConflictError | TransitionError | WorkspaceExistsError):
        return 409
    return 500


@app.exception_handler(WarrenError)
async def handle_warren_error(_request: Request, exc: WarrenError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error("{} failed: {}", exc.operation, exc)
    return JSONResponse(status_code=code, content={"detail": exc.message, "error": exc.to_dict()})


@app.exception_handler(ShuttingDownError)
async def handle_shutting_down(_request: Request, _exc: ShuttingDownError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": "Service is shutting down."})


# ---------------------------------------------------------------------------
# API router -- all backend endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health(request: Request) -> dict[str, str]:
    adapter: DockerAdapter | None = getattr(request.app.state, "adapter", None)
    docker_status = "unavailable"
    if adapter is not None:
        try:
            await adapter.ping()
        except Exception as exc:
            logger.warning("Health: docker ping failed: {}", exc)
        else:
            docker_status = "ok"
    return {"status": "ok", "docker": docker_status}


from warren.workspace_runtime.routers.workspaces import router as workspaces_router  # noqa: E402

api.include_router(workspaces_router)

app.include_router(api)
