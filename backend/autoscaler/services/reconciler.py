"""
Reconciliation between the ledger, substrate inventories and GitHub.

None of the three views is authoritative on its own and all of them are
eventually consistent, so every correction here is conservative: young
machines are left alone, and deletions go through the delete queue.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from autoscaler.config import AutoScalerConfig, TargetConfig
from autoscaler.errors import CloudControllerError
from autoscaler.models.job import JobState
from autoscaler.models.runner import Runner, RunnerStatus
from autoscaler.services.context import FleetContext
from autoscaler.services.github import GitHubRunner
from autoscaler.services.ledger import (
    get_job,
    get_runner_by_hostname,
    get_runner_by_server_id,
    online_runners,
    runners_in_states,
    runners_not_in_states,
)
from autoscaler.services.lifecycle import append_event
from autoscaler.services.task_queue import DeleteRunnerTask

logger = logging.getLogger(__name__)

OFFLINE_GRACE = timedelta(minutes=30)
MAX_IDLE_AGE = timedelta(hours=6)
ORPHAN_MIN_AGE = timedelta(minutes=5)
VANISH_MIN_AGE = timedelta(hours=1)
STUCK_CREATED_THRESHOLD = timedelta(minutes=20)
MAX_DELETION_SIGHTINGS = 10


def runner_age(runner: Runner, now: datetime) -> timedelta:
    born = runner.creation_queued_time or runner.last_state_time or now
    return now - born


async def queue_deletion(ctx: FleetContext, db: AsyncSession, runner: Runner, reason: str) -> None:
    """Append DeletionQueued and enqueue a delete task in the caller's transaction."""
    append_event(runner, RunnerStatus.DELETION_QUEUED, reason)
    await ctx.delete_queue.enqueue(
        DeleteRunnerTask(runner_id=runner.id, server_id=runner.cloud_server_id),
        db=db,
    )


async def _registered_runners(ctx: FleetContext, config: AutoScalerConfig, target: TargetConfig) -> list[GitHubRunner] | None:
    runners = await ctx.github.get_runners_for(target)
    if runners is None:
        return None
    return [r for r in runners if r.name.startswith(config.runner_prefix)]


async def _clean_registrations(
    ctx: FleetContext,
    config: AutoScalerConfig,
    target: TargetConfig,
    registered: list[GitHubRunner],
    now: datetime,
) -> None:
    async with ctx.session_factory() as db:
        for gh_runner in registered:
            runner = await get_runner_by_hostname(db, gh_runner.name)

            if not gh_runner.is_online:
                if runner is None:
                    logger.info(f"Removing unknown offline runner {gh_runner.name} from {target.name}")
                    await ctx.github.remove_runner_from(target, gh_runner.id)
                    continue
                if runner_age(runner, now) < OFFLINE_GRACE:
                    continue
                logger.info(f"Runner {gh_runner.name} is offline on GitHub, cleaning up")
                runner.is_online = False
                append_event(runner, RunnerStatus.CLEANUP, "Runner offline on GitHub, removed registration")
                await db.commit()
                await ctx.github.remove_runner_from(target, gh_runner.id)
                continue

            if gh_runner.busy or runner is None:
                continue
            if runner_age(runner, now) <= MAX_IDLE_AGE:
                continue
            if runner.last_state == RunnerStatus.PROCESSING:
                continue

            logger.info(f"Runner {gh_runner.name} idle for over {MAX_IDLE_AGE}, retiring it")
            if not await ctx.github.remove_runner_from(target, gh_runner.id):
                continue
            runner.is_online = False
            await queue_deletion(ctx, db, runner, "Idle for too long, removed registration")
            await db.commit()


async def _cull_orphan_servers(ctx: FleetContext, config: AutoScalerConfig, registered_names: set[str], now: datetime) -> None:
    for controller in ctx.clouds.all():
        cloud = controller.cloud_identifier
        try:
            servers = await controller.get_all_servers_from_csp()
        except CloudControllerError as e:
            logger.error(f"Failed to list servers on {cloud}: {e}")
            continue

        for server in servers:
            if server.name in registered_names or now - server.created_at <= ORPHAN_MIN_AGE:
                continue

            async with ctx.session_factory() as db:
                runner = await get_runner_by_server_id(db, cloud, server.id)
                if runner is None:
                    runner = await get_runner_by_hostname(db, server.name)
                if runner is None:
                    logger.warning(f"Server {server.name} on {cloud} has no ledger record, deleting it")
                    try:
                        await controller.delete_runner(server.id)
                    except CloudControllerError as e:
                        logger.error(f"Failed to delete unknown server {server.name} on {cloud}: {e}")
                    continue

                if runner.job_id is not None:
                    job = await get_job(db, runner.job_id)
                    if job is not None and job.state == JobState.IN_PROGRESS.value:
                        target = config.find_target(job.owner, job.repository)
                        info = await ctx.github.get_job_info(
                            job.github_job_id, job.repository, target.github_token if target else None
                        )
                        if info is not None and info.status == "in_progress":
                            logger.debug(f"Server {server.name} is unregistered but its job is still running")
                            continue

                sightings = runner.count_events(RunnerStatus.DELETION_QUEUED)
                if sightings == 0:
                    logger.info(f"Server {server.name} on {cloud} is not registered on GitHub, queuing deletion")
                    await queue_deletion(ctx, db, runner, "Server not registered on GitHub")
                elif sightings > MAX_DELETION_SIGHTINGS:
                    logger.warning(f"Server {server.name} on {cloud} still exists after {sightings} deletion attempts, requeuing")
                    await queue_deletion(ctx, db, runner, "Server still exists, deletion requeued")
                else:
                    logger.info(f"Server {server.name} on {cloud} is awaiting deletion ({sightings} sightings)")
                    append_event(runner, RunnerStatus.DELETION_QUEUED, "Server still exists, deletion pending")
                await db.commit()


async def _mark_vanished(ctx: FleetContext, registered_names: set[str], now: datetime) -> None:
    async with ctx.session_factory() as db:
        for runner in await online_runners(db):
            if runner.hostname in registered_names:
                continue
            if runner_age(runner, now) <= VANISH_MIN_AGE:
                continue
            if runner.last_state == RunnerStatus.DELETION_QUEUED:
                continue
            logger.info(f"Runner {runner.hostname} is online in the ledger but unknown to GitHub, marking vanished")
            runner.is_online = False
            append_event(runner, RunnerStatus.VANISHED_ON_CLOUD, "Runner no longer registered on GitHub")
        await db.commit()


async def cleanup(ctx: FleetContext, config: AutoScalerConfig, now: datetime | None = None) -> None:
    """
    One reconciliation pass over every target and substrate.

    Registrations are cleaned per target. Server culling and vanish detection
    need the complete registered name set, so they are skipped when GitHub
    could not be read for any target.
    """
    now = now or datetime.utcnow()
    registered_names: set[str] = set()
    complete = True

    for target in config.targets:
        registered = await _registered_runners(ctx, config, target)
        if registered is None:
            logger.warning(f"Skipping registration cleanup for {target.name}, GitHub unavailable")
            complete = False
            continue
        await _clean_registrations(ctx, config, target, registered, now)

        refreshed = await _registered_runners(ctx, config, target)
        if refreshed is None:
            complete = False
            continue
        registered_names.update(r.name for r in refreshed)

    if not complete:
        logger.warning("Registration list incomplete, skipping server culling this pass")
        return

    await _cull_orphan_servers(ctx, config, registered_names, now)
    await _mark_vanished(ctx, registered_names, now)


async def check_stuck_runners(ctx: FleetContext, now: datetime | None = None) -> int:
    """Fail and delete runners that were created but never came up."""
    now = now or datetime.utcnow()
    failed = 0
    async with ctx.session_factory() as db:
        for runner in await runners_in_states(db, [RunnerStatus.CREATED]):
            if now - runner.last_state_time <= STUCK_CREATED_THRESHOLD:
                continue
            logger.warning(f"Runner {runner.hostname} never provisioned within {STUCK_CREATED_THRESHOLD}, deleting it")
            append_event(runner, RunnerStatus.FAILURE, "Runner did not provision in time")
            await queue_deletion(ctx, db, runner, "Runner did not provision in time")
            await db.commit()
            if runner.hostname:
                await ctx.tracker.try_remove(runner.hostname)
            failed += 1
    return failed


KEEP_ON_KILL = (RunnerStatus.PROCESSING, RunnerStatus.DELETION_QUEUED, RunnerStatus.DELETED)


async def kill_non_processing_runners(ctx: FleetContext) -> list[int]:
    """Queue deletion of every runner that isn't working on a job or already going away."""
    killed = []
    async with ctx.session_factory() as db:
        for runner in await runners_not_in_states(db, KEEP_ON_KILL):
            runner.is_online = False
            await queue_deletion(ctx, db, runner, "Killed by operator")
            killed.append(runner.id)
        await db.commit()
    logger.info(f"Queued deletion of {len(killed)} non-processing runners")
    return killed
