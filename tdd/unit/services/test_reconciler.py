"""
Unit tests for reconciler.py - ledger vs. substrate vs. GitHub reconciliation.

These tests verify:
- Idle runners past the max age are deregistered and deleted, busy ones kept
- Offline registrations are cleaned up
- Unregistered servers are culled, young ones and ones with running jobs kept
- Online runners GitHub has forgotten are marked vanished
- Runners that never provision are failed
"""
import sys
from pathlib import Path

import pytest

# Add backend and tdd to path for imports
backend_path = Path(__file__).parent.parent.parent.parent / "backend"
tdd_path = Path(__file__).parent.parent.parent.parent / "tdd"
sys.path.insert(0, str(backend_path))
sys.path.insert(0, str(tdd_path))

from autoscaler.models import JobState, Runner, RunnerStatus
from autoscaler.services.reconciler import check_stuck_runners, cleanup, kill_non_processing_runners
from autoscaler.services.task_queue import CreateRunnerTask

from shared.assertions import assert_event_sequence, assert_last_state
from shared.factories import JobFactory, RunnerFactory, ago, fetch, persist


def runner_at(status: RunnerStatus, hours: float = 0, minutes: float = 0, **kwargs) -> Runner:
    """A runner queued ``hours``/``minutes`` ago that moved to status a minute later."""
    born = ago(hours=hours, minutes=minutes)
    states = [(RunnerStatus.CREATION_QUEUED, born)]
    if status == RunnerStatus.PROCESSING:
        states.append((RunnerStatus.PROVISIONED, ago(hours=hours, minutes=minutes - 1)))
    if status != RunnerStatus.CREATION_QUEUED:
        states.append((status, ago(hours=hours, minutes=minutes - 2)))
    return RunnerFactory(states=states, **kwargs)


# -----------------------------------------------------------------------------
# Registration cleanup
# -----------------------------------------------------------------------------

class TestIdleRunners:
    """Tests for retiring idle runners."""

    async def test_idle_runner_past_max_age_is_retired(self, ctx, fleet_config, github, db_session, session_factory):
        """A 7h old idle runner is deregistered and queued for deletion."""
        runner = await persist(db_session, runner_at(RunnerStatus.PROVISIONED, hours=7, hostname="gh-idle", online=True))
        registration = github.register("acme", "gh-idle", online=True, busy=False)

        await cleanup(ctx, fleet_config)

        assert github.removed == [("acme", registration.id)]
        stored = await fetch(session_factory, Runner, runner.id)
        assert_last_state(stored, RunnerStatus.DELETION_QUEUED)
        assert stored.is_online is False
        [task] = await ctx.delete_queue.items()
        assert task.runner_id == runner.id
        assert task.server_id == runner.cloud_server_id

    async def test_processing_runner_is_kept(self, ctx, fleet_config, github, db_session, session_factory):
        runner = await persist(db_session, runner_at(RunnerStatus.PROCESSING, hours=7, hostname="gh-busy", online=True))
        github.register("acme", "gh-busy", online=True, busy=False)

        await cleanup(ctx, fleet_config)

        assert github.removed == []
        assert_last_state(await fetch(session_factory, Runner, runner.id), RunnerStatus.PROCESSING)
        assert await ctx.delete_queue.count() == 0

    async def test_busy_runner_is_kept(self, ctx, fleet_config, github, db_session):
        await persist(db_session, runner_at(RunnerStatus.PROVISIONED, hours=7, hostname="gh-busy", online=True))
        github.register("acme", "gh-busy", online=True, busy=True)

        await cleanup(ctx, fleet_config)
        assert github.removed == []

    async def test_young_idle_runner_is_kept(self, ctx, fleet_config, github, db_session):
        await persist(db_session, runner_at(RunnerStatus.PROVISIONED, hours=2, hostname="gh-fresh", online=True))
        github.register("acme", "gh-fresh", online=True)

        await cleanup(ctx, fleet_config)
        assert github.removed == []


class TestOfflineRegistrations:
    """Tests for offline registrations on GitHub."""

    async def test_unknown_offline_registration_removed(self, ctx, fleet_config, github):
        registration = github.register("acme", "gh-stranger", online=False)
        await cleanup(ctx, fleet_config)
        assert github.removed == [("acme", registration.id)]

    async def test_foreign_prefix_is_ignored(self, ctx, fleet_config, github):
        github.register("acme", "laptop-of-someone", online=False)
        await cleanup(ctx, fleet_config)
        assert github.removed == []

    async def test_offline_runner_is_cleaned_up(self, ctx, fleet_config, github, db_session, session_factory):
        runner = await persist(db_session, runner_at(RunnerStatus.PROVISIONED, minutes=45, hostname="gh-gone", online=True))
        github.register("acme", "gh-gone", online=False)

        await cleanup(ctx, fleet_config)

        stored = await fetch(session_factory, Runner, runner.id)
        assert_last_state(stored, RunnerStatus.CLEANUP)
        assert stored.is_online is False
        assert len(github.removed) == 1

    async def test_offline_within_grace_is_kept(self, ctx, fleet_config, github, db_session):
        await persist(db_session, runner_at(RunnerStatus.CREATED, minutes=10, hostname="gh-booting"))
        github.register("acme", "gh-booting", online=False)

        await cleanup(ctx, fleet_config)
        assert github.removed == []


# -----------------------------------------------------------------------------
# Server culling
# -----------------------------------------------------------------------------

class TestOrphanServers:
    """Tests for culling servers GitHub doesn't know about."""

    async def test_unregistered_server_queued_for_deletion(self, ctx, fleet_config, cloud_a, db_session, session_factory):
        server = cloud_a.add_server("gh-orphan", ago(minutes=30))
        runner = await persist(db_session, runner_at(
            RunnerStatus.PROVISIONED, minutes=30, hostname="gh-orphan", cloud="cloud-a", cloud_server_id=server.id,
        ))

        await cleanup(ctx, fleet_config)

        stored = await fetch(session_factory, Runner, runner.id)
        assert_last_state(stored, RunnerStatus.DELETION_QUEUED)
        [task] = await ctx.delete_queue.items()
        assert task.server_id == server.id

    async def test_repeat_sightings_dont_requeue(self, ctx, fleet_config, cloud_a, db_session, session_factory):
        server = cloud_a.add_server("gh-orphan", ago(minutes=30))
        runner = await persist(db_session, runner_at(
            RunnerStatus.PROVISIONED, minutes=30, hostname="gh-orphan", cloud="cloud-a", cloud_server_id=server.id,
        ))

        await cleanup(ctx, fleet_config)
        await cleanup(ctx, fleet_config)

        stored = await fetch(session_factory, Runner, runner.id)
        assert stored.count_events(RunnerStatus.DELETION_QUEUED) == 2
        assert await ctx.delete_queue.count() == 1

    async def test_server_without_record_is_deleted(self, ctx, fleet_config, cloud_b):
        server = cloud_b.add_server("gh-mystery", ago(minutes=30))
        await cleanup(ctx, fleet_config)
        assert cloud_b.deleted == [server.id]

    async def test_young_server_is_kept(self, ctx, fleet_config, cloud_a):
        cloud_a.add_server("gh-newborn", ago(minutes=2))
        await cleanup(ctx, fleet_config)
        assert cloud_a.deleted == []

    async def test_registered_server_is_kept(self, ctx, fleet_config, cloud_a, github):
        cloud_a.add_server("gh-known", ago(hours=1))
        github.register("acme", "gh-known", online=True, busy=True)
        await cleanup(ctx, fleet_config)
        assert cloud_a.deleted == []

    async def test_server_with_running_job_is_kept(self, ctx, fleet_config, cloud_a, github, db_session):
        server = cloud_a.add_server("gh-working", ago(minutes=30))
        job = JobFactory(state=JobState.IN_PROGRESS.value)
        runner = runner_at(
            RunnerStatus.PROCESSING, minutes=30, hostname="gh-working", cloud="cloud-a", cloud_server_id=server.id,
        )
        await persist(db_session, job, runner)
        runner.job_id = job.id
        job.runner_id = runner.id
        await db_session.commit()
        github.set_job(job.github_job_id, "in_progress")

        await cleanup(ctx, fleet_config)
        assert await ctx.delete_queue.count() == 0

    async def test_inventory_failure_skips_cloud(self, ctx, fleet_config, cloud_a, cloud_b):
        cloud_a.list_fails = True
        server = cloud_b.add_server("gh-mystery", ago(minutes=30))
        await cleanup(ctx, fleet_config)
        assert cloud_b.deleted == [server.id]

    async def test_github_unavailable_skips_culling(self, ctx, fleet_config, cloud_a, github):
        github.available = False
        cloud_a.add_server("gh-mystery", ago(minutes=30))
        await cleanup(ctx, fleet_config)
        assert cloud_a.deleted == []


class TestVanishedRunners:
    """Tests for online runners GitHub no longer lists."""

    async def test_online_runner_missing_on_github(self, ctx, fleet_config, db_session, session_factory):
        runner = await persist(db_session, runner_at(RunnerStatus.PROVISIONED, hours=2, hostname="gh-ghost", online=True))

        await cleanup(ctx, fleet_config)

        stored = await fetch(session_factory, Runner, runner.id)
        assert_last_state(stored, RunnerStatus.VANISHED_ON_CLOUD)
        assert stored.is_online is False

    async def test_young_runner_not_vanished(self, ctx, fleet_config, db_session, session_factory):
        runner = await persist(db_session, runner_at(RunnerStatus.PROVISIONED, minutes=20, hostname="gh-new", online=True))
        await cleanup(ctx, fleet_config)
        assert_last_state(await fetch(session_factory, Runner, runner.id), RunnerStatus.PROVISIONED)


# -----------------------------------------------------------------------------
# Stuck runners and operator kill
# -----------------------------------------------------------------------------

class TestStuckRunners:
    """Tests for check_stuck_runners()."""

    async def test_created_too_long_is_failed(self, ctx, db_session, session_factory):
        runner = await persist(db_session, runner_at(RunnerStatus.CREATED, minutes=30, hostname="gh-slow"))
        await ctx.tracker.try_add("gh-slow", CreateRunnerTask(runner_id=runner.id))

        assert await check_stuck_runners(ctx) == 1

        stored = await fetch(session_factory, Runner, runner.id)
        assert_event_sequence(stored, [
            RunnerStatus.CREATION_QUEUED,
            RunnerStatus.CREATED,
            RunnerStatus.FAILURE,
            RunnerStatus.DELETION_QUEUED,
        ])
        assert await ctx.delete_queue.count() == 1
        assert await ctx.tracker.get("gh-slow") is None

    async def test_recently_created_is_kept(self, ctx, db_session):
        await persist(db_session, runner_at(RunnerStatus.CREATED, minutes=10, hostname="gh-fast"))
        assert await check_stuck_runners(ctx) == 0


class TestKillNonProcessing:
    """Tests for kill_non_processing_runners()."""

    async def test_kills_everything_not_working(self, ctx, db_session):
        idle = runner_at(RunnerStatus.PROVISIONED, minutes=30, online=True)
        queued = runner_at(RunnerStatus.CREATION_QUEUED, minutes=5)
        working = runner_at(RunnerStatus.PROCESSING, minutes=30, online=True)
        gone = runner_at(RunnerStatus.DELETED, minutes=30)
        await persist(db_session, idle, queued, working, gone)

        killed = await kill_non_processing_runners(ctx)

        assert sorted(killed) == sorted([idle.id, queued.id])
        assert await ctx.delete_queue.count() == 2
