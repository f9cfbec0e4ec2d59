"""
The control loop.

A single asyncio task wakes every tick and:
- every refresh interval: snapshots the configuration and recomputes PoolStats
- every cull interval: runs the reconciliation sub-passes, each isolated so a
  failing pass doesn't block the others, then expires bans
- every tick: drains the delete queue, then the create queue

Shutdown is cooperative: stop() sets an event the loop checks at every tick
boundary and inter-task delay, and in-flight tasks are awaited.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoscaler.config import ConfigProvider, Settings, get_settings
from autoscaler.errors import CloudControllerError
from autoscaler.models.job import Job
from autoscaler.services.cloud.docker_substrate import DockerCloudController
from autoscaler.services.cloud.registry import CloudRegistry
from autoscaler.services.context import FleetContext
from autoscaler.services.demand import check_stuck_jobs, replenish_pools
from autoscaler.services.error_reporting import get_error_reporter
from autoscaler.services.github import GitHubClient
from autoscaler.services.ledger import get_runner_by_hostname, last_state_subquery, purge_expired
from autoscaler.services.reconciler import check_stuck_runners, cleanup
from autoscaler.services.task_executor import MAX_RETRIES, execute_create, execute_delete
from autoscaler.services.task_queue import CreateRunnerTask

logger = logging.getLogger(__name__)


@dataclass
class PoolStats:
    """Gauges recomputed every refresh interval."""
    collected_at: datetime = field(default_factory=datetime.utcnow)
    runners_by_state: dict[str, int] = field(default_factory=dict)
    jobs_by_state: dict[str, int] = field(default_factory=dict)
    queued_creates: int = 0
    queued_deletes: int = 0
    in_flight: int = 0
    servers_by_cloud: dict[str, int] = field(default_factory=dict)
    banned: list[str] = field(default_factory=list)


async def collect_stats(ctx: FleetContext) -> PoolStats:
    stats = PoolStats()
    async with ctx.session_factory() as db:
        last = last_state_subquery()
        rows = await db.execute(select(last.c.status, func.count()).group_by(last.c.status))
        stats.runners_by_state = {status: count for status, count in rows.all()}
        rows = await db.execute(select(Job.state, func.count()).group_by(Job.state))
        stats.jobs_by_state = {state: count for state, count in rows.all()}

    stats.queued_creates = await ctx.create_queue.count()
    stats.queued_deletes = await ctx.delete_queue.count()
    stats.in_flight = await ctx.tracker.count()
    stats.banned = [f"{ban.cloud}/{ban.size}" for ban in ctx.bans.active()]

    for controller in ctx.clouds.all():
        try:
            stats.servers_by_cloud[controller.cloud_identifier] = await controller.get_server_count_from_csp()
        except CloudControllerError as e:
            logger.warning(f"Could not count servers on {controller.cloud_identifier}: {e}")
    return stats


class PoolManager:
    """
    Runs the control loop for one FleetContext.

    Usage:
        manager = PoolManager(ctx)
        await manager.start()
        ...
        await manager.stop()
    """

    def __init__(self, ctx: FleetContext, settings: Settings | None = None):
        self.ctx = ctx
        self._settings = settings or get_settings()
        self._running = False
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._stats = PoolStats()
        self._config = None

    @property
    def stats(self) -> PoolStats:
        return self._stats

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the control loop task."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._control_loop())
        logger.info("Pool manager started")

    async def stop(self):
        """Ask the loop to stop and wait for in-flight work to finish."""
        self._running = False
        self._stop_event.set()
        if self._loop_task:
            await self._loop_task
            self._loop_task = None
        await self.ctx.github.aclose()
        logger.info("Pool manager stopped")

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless asked to stop. Returns True if stopping."""
        if seconds <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _control_loop(self):
        loop = asyncio.get_running_loop()
        next_refresh = 0.0
        next_cull = loop.time() + self._settings.cull_interval

        while not self._stop_event.is_set():
            now = loop.time()
            if now >= next_refresh:
                await self._isolated("refresh", self.refresh)
                next_refresh = now + self._settings.refresh_interval
            if now >= next_cull:
                await self.run_cull_passes()
                next_cull = now + self._settings.cull_interval

            await self._isolated("drain", self.drain_queues)
            if await self._sleep(self._settings.tick_interval):
                break

    async def _isolated(self, name: str, fn: Callable[[], Awaitable]) -> None:
        try:
            await fn()
        except Exception as e:
            self.ctx.reporter.capture_exception(e, {"pass": name})

    async def refresh(self) -> None:
        """Take a fresh configuration snapshot and recompute gauges."""
        self._config = self.ctx.config.snapshot()
        self._stats = await collect_stats(self.ctx)

    async def run_cull_passes(self, now: datetime | None = None) -> None:
        config = self._config or self.ctx.config.snapshot()
        await self._isolated("stuck_runners", lambda: check_stuck_runners(self.ctx, now))
        await self._isolated("cleanup", lambda: cleanup(self.ctx, config, now))
        await self._isolated("replenish", lambda: replenish_pools(self.ctx, config))
        await self._isolated("stuck_jobs", lambda: check_stuck_jobs(self.ctx, config, now))
        await self._isolated("retention", self._purge)
        self.ctx.bans.expire(now)

    async def _purge(self) -> None:
        async with self.ctx.session_factory() as db:
            await purge_expired(db)

    async def _run_task(self, semaphore: asyncio.Semaphore, execute, task, queue) -> None:
        async with semaphore:
            try:
                await execute(self.ctx, task)
            except Exception as e:
                self.ctx.reporter.capture_exception(e, {"task": type(task).__name__, "runner_id": task.runner_id})
                if isinstance(task, CreateRunnerTask) and task.is_stuck_replacement:
                    return
                retry_count = task.retry_count + 1
                if retry_count < MAX_RETRIES:
                    await queue.enqueue(replace(task, retry_count=retry_count))

    async def drain_queues(self) -> None:
        """Run queued deletes, wait for them, then start up to the create parallelism."""
        settings = self._settings
        ctx = self.ctx

        pending_deletes = await ctx.delete_queue.count()
        semaphore = asyncio.Semaphore(settings.delete_parallelism)
        running = []
        for _ in range(pending_deletes):
            task = await ctx.delete_queue.try_dequeue()
            if task is None:
                break
            running.append(asyncio.create_task(self._run_task(semaphore, execute_delete, task, ctx.delete_queue)))
            if await self._sleep(settings.delete_spacing):
                break
        if running:
            await asyncio.gather(*running)

        if self._stop_event.is_set():
            return

        semaphore = asyncio.Semaphore(settings.create_parallelism)
        running = []
        for _ in range(settings.create_parallelism):
            task = await ctx.create_queue.try_dequeue()
            if task is None:
                break
            running.append(asyncio.create_task(self._run_task(semaphore, execute_create, task, ctx.create_queue)))
            if await self._sleep(settings.create_spacing):
                break
        if running:
            await asyncio.gather(*running)


def build_context(
    settings: Settings | None = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> FleetContext:
    """Wire the production collaborators from settings."""
    settings = settings or get_settings()
    if session_factory is None:
        from autoscaler.database import async_session
        session_factory = async_session

    config_path = Path(settings.config_path)
    if config_path.exists():
        provider = ConfigProvider(config_path)
    else:
        logger.warning(f"No config file at {config_path}, running with an empty fleet")
        provider = ConfigProvider()
    config = provider.snapshot()

    async def hostname_in_ledger(name: str) -> bool:
        async with session_factory() as db:
            return await get_runner_by_hostname(db, name) is not None

    clouds = CloudRegistry()
    if config.docker.enabled:
        clouds.register(DockerCloudController(provider, is_name_taken=hostname_in_ledger))

    return FleetContext(
        session_factory=session_factory,
        config=provider,
        github=GitHubClient(settings.github_api_url),
        clouds=clouds,
        reporter=get_error_reporter(),
    )


# Global singleton instance
_pool_manager: Optional[PoolManager] = None


def get_pool_manager() -> PoolManager:
    """Get the global PoolManager instance."""
    global _pool_manager
    if _pool_manager is None:
        _pool_manager = PoolManager(build_context())
    return _pool_manager
