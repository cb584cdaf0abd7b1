"""Service configuration loaded from WARREN_* environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BUILD_CONTEXT = Path(__file__).parent / "image"
"""Directory holding the Dockerfile for the default workspace image."""


class WarrenSettings(BaseSettings):
    """Warren Workspace Runtime settings.

    All fields are read from environment variables with the ``WARREN_`` prefix.
    For example, ``WARREN_LOG_LEVEL=DEBUG`` maps to ``log_level``.
    """

    model_config = SettingsConfigDict(
        env_prefix="WARREN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    """Emit one JSON object per log line instead of the colored console format."""

    # -- Infrastructure --------------------------------------------------------
    database_url: str | None = None
    """PostgreSQL connection string (psycopg).  Required for full operation."""

    docker_base_url: str | None = None
    """Docker daemon URL.  ``None`` reads DOCKER_HOST & friends from the environment."""

    # -- Archive storage -------------------------------------------------------
    archive_store: Literal["local", "s3"] = "local"

    data_root: str = "./data"
    """Root directory for archives when ``archive_store = "local"``."""

    # S3 (only when archive_store = "s3")
    s3_endpoint: str | None = None
    s3_bucket: str | None = None
    s3_region: str | None = None
    s3_access_key: str | None = None
    s3_secret_key: SecretStr | None = None
    s3_path_style: bool = False
    """Use path-style addressing (required by MinIO and some S3-compatible services)."""

    archive_mode: Literal["filesystem", "image"] = "filesystem"
    """``filesystem`` tars the workspace directory; ``image`` commits and exports the container.

    Restore follows the same mode, so switching it invalidates existing archives.
    """

    # -- Workspace containers --------------------------------------------------
    workspace_image: str = "warren-workspace:latest"
    image_build_context: Path = DEFAULT_BUILD_CONTEXT
    workspace_dir: str = "/workspace"

    memory_limit_mb: int = 500
    """Memory ceiling per workspace.  Swap is capped at the same value."""

    cpu_period: int = 100_000
    cpu_quota: int = 50_000
    """50ms of every 100ms period, i.e. half a CPU."""

    route_domain: str = "localhost"
    route_port: int = 5173
    docker_network: str | None = "web"
    """Network name advertised to the reverse proxy via container labels."""

    stop_timeout: int = 10

    # -- Reclaimer -------------------------------------------------------------
    heartbeat_timeout: float = 600.0
    """Seconds without a heartbeat before an active workspace is archived."""

    reclaim_interval: float = 30.0
    reclaim_concurrency: int = 1

    # -- Startup ---------------------------------------------------------------
    startup_retries: int = 5
    startup_retry_delay: float = 1.0

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    graceful_shutdown_timeout: int = 300
    """Seconds to wait for in-flight agent sessions to finish during shutdown."""


def get_settings() -> WarrenSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to
    force a re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> WarrenSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return WarrenSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
