"""
Unit tests for pool_manager.py - the control loop.

These tests verify:
- Queues drain deletes before creates
- A failing sub-pass doesn't stop the others
- Unexpected executor errors are reported and the task requeued, except
  stuck-job replacements
- Stats collection and loop start/stop
"""
import asyncio
import sys
from pathlib import Path

import pytest

# Add backend and tdd to path for imports
backend_path = Path(__file__).parent.parent.parent.parent / "backend"
tdd_path = Path(__file__).parent.parent.parent.parent / "tdd"
sys.path.insert(0, str(backend_path))
sys.path.insert(0, str(tdd_path))

from autoscaler.config import ConfigProvider, Settings
from autoscaler.models import Runner, RunnerStatus
from autoscaler.services import pool_manager as pool_manager_module
from autoscaler.services.pool_manager import build_context, collect_stats
from autoscaler.services.task_queue import CreateRunnerTask, DeleteRunnerTask

from shared.assertions import assert_last_state
from shared.factories import RunnerFactory, ago, fetch, persist
from shared.fleet import acme_target, make_config


async def wait_for(predicate, timeout: float = 5.0):
    """Poll an async predicate until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestDrainQueues:
    """Tests for PoolManager.drain_queues()."""

    async def test_runs_creates_and_deletes(self, pool_manager, ctx, cloud_a, db_session, session_factory):
        new = await persist(db_session, RunnerFactory(queued=True))
        server = cloud_a.add_server("gh-old", ago(hours=2))
        old = await persist(db_session, RunnerFactory(hostname="gh-old", cloud_server_id=server.id, states=[
            (RunnerStatus.CREATION_QUEUED, ago(hours=2)),
            (RunnerStatus.DELETION_QUEUED, ago(hours=1)),
        ]))
        await ctx.create_queue.enqueue(CreateRunnerTask(runner_id=new.id))
        await ctx.delete_queue.enqueue(DeleteRunnerTask(runner_id=old.id, server_id=server.id))

        await pool_manager.drain_queues()

        assert_last_state(await fetch(session_factory, Runner, new.id), RunnerStatus.CREATED)
        assert_last_state(await fetch(session_factory, Runner, old.id), RunnerStatus.DELETED)
        assert cloud_a.deleted == [server.id]
        assert await ctx.create_queue.count() == 0
        assert await ctx.delete_queue.count() == 0

    async def test_create_parallelism_bounds_a_drain(self, ctx, fast_settings, db_session):
        manager = pool_manager_module.PoolManager(ctx, fast_settings.model_copy(update={"create_parallelism": 2}))
        for _ in range(3):
            runner = await persist(db_session, RunnerFactory(queued=True))
            await ctx.create_queue.enqueue(CreateRunnerTask(runner_id=runner.id))

        await manager.drain_queues()
        assert await ctx.create_queue.count() == 1

    async def test_executor_crash_is_reported_and_requeued(self, pool_manager, ctx, monkeypatch):
        async def explode(ctx, task):
            raise RuntimeError("bug")

        monkeypatch.setattr(pool_manager_module, "execute_create", explode)
        await ctx.create_queue.enqueue(CreateRunnerTask(runner_id=1))

        await pool_manager.drain_queues()

        assert ctx.reporter.reported == 1
        [task] = await ctx.create_queue.items()
        assert task.retry_count == 1

    async def test_crashed_stuck_replacement_is_not_requeued(self, pool_manager, ctx, monkeypatch):
        """The stuck job check queues a fresh replacement instead."""
        async def explode(ctx, task):
            raise RuntimeError("bug")

        monkeypatch.setattr(pool_manager_module, "execute_create", explode)
        await ctx.create_queue.enqueue(CreateRunnerTask(runner_id=1, is_stuck_replacement=True, stuck_job_id=7))

        await pool_manager.drain_queues()

        assert ctx.reporter.reported == 1
        assert await ctx.create_queue.count() == 0


class TestCullPasses:
    """Tests for PoolManager.run_cull_passes()."""

    async def test_failing_pass_is_isolated(self, pool_manager, ctx, github, monkeypatch):
        """cleanup blowing up still lets pool replenishment run."""
        async def broken(target):
            raise RuntimeError("github client bug")

        monkeypatch.setattr(github, "get_runners_for", broken)
        ctx.config = ConfigProvider(initial=make_config(targets=[
            acme_target(pools=[{"size": "size-s", "num_runners": 2}]),
        ]))

        await pool_manager.run_cull_passes()

        assert ctx.reporter.reported == 1
        assert await ctx.create_queue.count() == 2

    async def test_expired_bans_are_lifted(self, pool_manager, ctx):
        ctx.bans.ban("cloud-a", "size-s", now=ago(hours=1))
        await pool_manager.run_cull_passes()
        assert ctx.bans.active() == []


class TestStats:
    """Tests for collect_stats() and refresh()."""

    async def test_collects_gauges(self, ctx, cloud_a, cloud_b, db_session):
        await persist(
            db_session,
            RunnerFactory(queued=True),
            RunnerFactory(queued=True),
        )
        await ctx.create_queue.enqueue(CreateRunnerTask(runner_id=1))
        cloud_a.add_server("gh-x", ago(minutes=1))
        cloud_b.list_fails = True
        ctx.bans.ban("cloud-a", "size-s")

        stats = await collect_stats(ctx)

        assert stats.runners_by_state == {"creation_queued": 2}
        assert stats.queued_creates == 1
        assert stats.servers_by_cloud == {"cloud-a": 1}
        assert stats.banned == ["cloud-a/size-s"]

    async def test_refresh_updates_stats(self, pool_manager, db_session):
        await persist(db_session, RunnerFactory(queued=True))
        await pool_manager.refresh()
        assert pool_manager.stats.runners_by_state == {"creation_queued": 1}


class TestLoop:
    """Tests for start()/stop()."""

    async def test_loop_drains_until_stopped(self, pool_manager, ctx, db_session, session_factory):
        runner = await persist(db_session, RunnerFactory(queued=True))
        await ctx.create_queue.enqueue(CreateRunnerTask(runner_id=runner.id))

        await pool_manager.start()
        assert pool_manager.running
        try:
            async def created():
                return (await fetch(session_factory, Runner, runner.id)).last_state == RunnerStatus.CREATED
            await wait_for(created)
        finally:
            await pool_manager.stop()

        assert not pool_manager.running


class TestBuildContext:
    """Tests for build_context()."""

    def test_missing_config_file_means_empty_fleet(self, tmp_path, session_factory):
        settings = Settings(config_path=str(tmp_path / "absent.json"))
        ctx = build_context(settings, session_factory)
        assert ctx.config.current.targets == ()
        assert len(ctx.clouds) == 0
