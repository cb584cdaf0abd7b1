"""Heartbeat reclaimer.

Every ``interval`` seconds, ask the project store for active projects whose
heartbeat is older than ``timeout`` and archive them.  The durable store, not
the in-process registry, decides what is stale: a container left behind by a
previous process is reclaimed just the same.

One project's failure never stops the sweep.  The pipeline has already
reverted it to ``active``, so it is reconsidered on the next tick.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import anyio
from loguru import logger

from warren.workspace_runtime.errors import TransitionError, WarrenError

if TYPE_CHECKING:
    from warren.workspace_runtime.lifecycle.manager import WorkspaceLifecycle
    from warren.workspace_runtime.managers.projects import ProjectStore


class HeartbeatReclaimer:
    def __init__(
        self,
        lifecycle: WorkspaceLifecycle,
        projects: ProjectStore,
        *,
        interval: float = 30.0,
        timeout: float = 600.0,
        concurrency: int = 1,
    ) -> None:
        self._lifecycle = lifecycle
        self._projects = projects
        self.interval = interval
        self.timeout = timeout
        self._concurrency = max(1, concurrency)
        self._task: asyncio.Task[None] | None = None

    async def sweep(self) -> list[str]:
        """Run one pass.  Returns the ids of the projects archived."""
        stale = await self._projects.find_stale(self.timeout)
        if not stale:
            return []
        logger.info("Reclaimer: {} stale workspaces", len(stale))

        archived: list[str] = []
        limiter = anyio.CapacityLimiter(self._concurrency)

        async def reclaim(project_id: str) -> None:
            async with limiter:
                try:
                    key = await self._lifecycle.archive_workspace(project_id, idle_timeout=self.timeout)
                except TransitionError as exc:
                    logger.info("Reclaimer: skipped {}: {}", project_id, exc)
                except WarrenError as exc:
                    logger.warning("Reclaimer: archive of {} failed: {}", project_id, exc)
                except Exception:
                    logger.exception("Reclaimer: archive of {} failed", project_id)
                else:
                    if key is not None:
                        archived.append(project_id)

        async with anyio.create_task_group() as tg:
            for record in stale:
                tg.start_soon(reclaim, record.project_id)
        return archived

    async def run_forever(self) -> None:
        logger.info("Reclaimer: started (interval={}s, timeout={}s)", self.interval, self.timeout)
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Reclaimer: sweep failed")
            await anyio.sleep(self.interval)

    # -- Background task -------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="heartbeat-reclaimer")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reclaimer: stopped")
