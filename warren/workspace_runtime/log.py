"""loguru setup for the workspace runtime.

Everything ends up in one loguru sink: warren's own ``logger`` calls and the
stdlib loggers of uvicorn, SQLAlchemy, docker-py and boto3, which are
bridged by ``_InterceptHandler``.  With ``json=True`` the sink emits one JSON
object per line (loguru's ``serialize``) for log collectors.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# HTTP round-trips to the Docker daemon and S3 are logged per request at DEBUG.
_CHATTY_LOGGERS = ("uvicorn.access", "urllib3", "docker", "botocore", "boto3", "s3transfer")


class _InterceptHandler(logging.Handler):
    """Re-emit stdlib records through loguru, attributed to the original caller."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", *, json: bool = False) -> None:
    """Install the loguru sink and route stdlib logging into it.

    Safe to call more than once (the CLI calls it before the app lifespan does).
    """
    level = level.upper()
    logger.remove()
    if json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_FORMAT)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging configured (level={}, json={})", level, json)
