"""
Create/delete task execution.

Each execute_* call handles exactly one dequeued task in its own session and
returns whether the task is finished (True) or failed (False). Failed tasks
that are still within the retry bound have already been re-enqueued by the
time the call returns.
"""

import logging
from dataclasses import replace
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from autoscaler.errors import ConfigurationError, UnsupportedMachineTypeError
from autoscaler.models.runner import Runner, RunnerStatus
from autoscaler.services.cloud.base import CloudController, Machine
from autoscaler.services.cloud.registry import select_candidates
from autoscaler.services.context import FleetContext
from autoscaler.services.ledger import add_runner, get_runner, get_runner_by_hostname
from autoscaler.services.lifecycle import append_event
from autoscaler.services.reconciler import queue_deletion
from autoscaler.services.task_queue import CancellationKey, CreateRunnerTask, DeleteRunnerTask

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


def cancellation_key(runner: Runner, repo_name: str) -> CancellationKey:
    return CancellationKey(
        owner=runner.owner,
        repository=repo_name or "",
        size=runner.size,
        profile=runner.profile,
        arch=runner.arch,
    )


# === Delete ===


async def execute_delete(ctx: FleetContext, task: DeleteRunnerTask) -> bool:
    async with ctx.session_factory() as db:
        runner = await get_runner(db, task.runner_id)
        if runner is None:
            logger.warning(f"Delete task for unknown runner {task.runner_id}, dropping it")
            return True

        server_id = task.server_id or runner.cloud_server_id
        if not server_id:
            runner.is_online = False
            append_event(runner, RunnerStatus.DELETED, "Runner had no server to delete")
            await db.commit()
            return True

        controller = ctx.clouds.get(runner.cloud)
        if controller is None:
            logger.error(f"Runner {runner.id} lives on unknown cloud {runner.cloud!r}, can't delete it")
            append_event(runner, RunnerStatus.FAILURE, f"Unknown cloud {runner.cloud!r}")
            await db.commit()
            return False

        try:
            await controller.delete_runner(server_id)
        except Exception as e:
            retry_count = task.retry_count + 1
            logger.error(f"Deleting {runner.hostname} on {runner.cloud} failed (attempt {retry_count}): {e}")
            append_event(runner, RunnerStatus.FAILURE, f"Delete failed: {e}")
            if retry_count < MAX_RETRIES:
                await ctx.delete_queue.enqueue(replace(task, retry_count=retry_count, queued_at=datetime.utcnow()), db=db)
            else:
                logger.error(f"Giving up on deleting {runner.hostname} after {retry_count} attempts")
            await db.commit()
            return False

        runner.is_online = False
        append_event(runner, RunnerStatus.DELETED, "Server deleted")
        await db.commit()
        logger.info(f"Deleted runner {runner.hostname} ({server_id}) on {runner.cloud}")
        return True


# === Create ===


async def _fail_create(
    ctx: FleetContext,
    db: AsyncSession,
    runner: Runner,
    task: CreateRunnerTask,
    reason: str,
    retryable: bool = True,
) -> bool:
    retry_count = task.retry_count + 1
    append_event(runner, RunnerStatus.FAILURE, reason)

    if not retryable:
        logger.error(f"Create of runner {runner.id} failed permanently: {reason}")
    elif task.is_stuck_replacement:
        logger.warning(f"Create of stuck replacement runner {runner.id} failed, not retrying: {reason}")
    elif retry_count >= MAX_RETRIES:
        logger.error(f"Create of runner {runner.id} failed {retry_count} times, giving up: {reason}")
    else:
        logger.warning(f"Create of runner {runner.id} failed (attempt {retry_count}), retrying: {reason}")
        append_event(runner, RunnerStatus.CREATION_QUEUED, f"Retry {retry_count}")
        await ctx.create_queue.enqueue(replace(task, retry_count=retry_count, queued_at=datetime.utcnow()), db=db)

    await db.commit()
    return False


async def _create_machine(controller: CloudController, runner: Runner, token: str) -> Machine:
    """Call the substrate, retrying once on any failure."""
    kwargs = dict(
        arch=runner.arch,
        size=runner.size,
        runner_token=token,
        target_name=runner.owner,
        is_custom=runner.is_custom,
        profile_name=runner.profile,
    )
    try:
        return await controller.create_runner(**kwargs)
    except (ConfigurationError, UnsupportedMachineTypeError):
        raise
    except Exception as e:
        logger.warning(f"Create on {controller.cloud_identifier} failed, retrying once: {e}")
        return await controller.create_runner(**kwargs)


async def execute_create(ctx: FleetContext, task: CreateRunnerTask) -> bool:
    config = ctx.config.current

    async with ctx.session_factory() as db:
        runner = await get_runner(db, task.runner_id)
        if runner is None:
            logger.warning(f"Create task for unknown runner {task.runner_id}, dropping it")
            return True
        if runner.last_state != RunnerStatus.CREATION_QUEUED:
            logger.warning(f"Runner {runner.id} is {runner.last_state}, not CreationQueued, skipping create")
            return True

        if await ctx.cancellations.consume(cancellation_key(runner, task.repo_name)):
            append_event(runner, RunnerStatus.CANCELLED, "Job was cancelled before the runner was created")
            await db.commit()
            logger.info(f"Skipped create of runner {runner.id}, its job was cancelled")
            return True

        target = config.target_by_name(runner.owner)
        if target is None:
            return await _fail_create(ctx, db, runner, task, f"Unknown target {runner.owner!r}", retryable=False)
        if not target.github_token:
            return await _fail_create(ctx, db, runner, task, f"No GitHub token for {target.name}", retryable=False)

        try:
            candidates = select_candidates(config, ctx.clouds, ctx.bans, runner.size, runner.arch)
        except ConfigurationError as e:
            return await _fail_create(ctx, db, runner, task, str(e), retryable=False)
        if not candidates:
            return await _fail_create(ctx, db, runner, task, f"No available cloud for [{runner.arch}/{runner.size}]")
        controller, _machine_type = candidates[0]
        cloud = controller.cloud_identifier

        token = await ctx.github.get_registration_token(target)
        if token is None:
            return await _fail_create(ctx, db, runner, task, f"Could not get a registration token for {target.name}")

        try:
            machine = await _create_machine(controller, runner, token)
        except (ConfigurationError, UnsupportedMachineTypeError) as e:
            return await _fail_create(ctx, db, runner, task, str(e), retryable=False)
        except Exception as e:
            ctx.bans.ban(cloud, runner.size, reason=str(e))
            return await _fail_create(ctx, db, runner, task, f"Create on {cloud} failed: {e}")

        runner.hostname = machine.name
        runner.ipv4 = machine.ipv4
        runner.cloud = machine.cloud or cloud
        runner.cloud_server_id = machine.server_id
        runner.provision_id = machine.provision_id
        runner.provision_payload = machine.provision_payload
        append_event(runner, RunnerStatus.CREATED, f"Created on {cloud} as {machine.server_id}")
        await db.commit()

    await ctx.tracker.try_add(machine.name, task)
    logger.info(f"Created runner {machine.name} on {cloud} for {runner.owner} [{runner.arch}/{runner.size}]")
    return True


# === Provisioning callbacks ===


async def on_runner_provisioned(ctx: FleetContext, hostname: str) -> bool:
    """The machine registered with GitHub and is ready for jobs."""
    await ctx.tracker.try_remove(hostname)
    async with ctx.session_factory() as db:
        runner = await get_runner_by_hostname(db, hostname)
        if runner is None:
            logger.warning(f"Provisioned callback for unknown runner {hostname}")
            return False
        runner.is_online = True
        append_event(runner, RunnerStatus.PROVISIONED, "Runner reported provisioned")
        await db.commit()
    logger.info(f"Runner {hostname} is provisioned")
    return True


async def on_provision_failed(ctx: FleetContext, hostname: str, reason: str = "") -> bool:
    """
    The machine came up but failed to bootstrap.

    Its server is deleted and, within the retry bound, a fresh runner is
    queued from the tracked create parameters.
    """
    task = await ctx.tracker.try_remove(hostname)
    async with ctx.session_factory() as db:
        runner = await get_runner_by_hostname(db, hostname)
        if runner is None:
            logger.warning(f"Provision failure callback for unknown runner {hostname}")
            return False

        runner.is_online = False
        append_event(runner, RunnerStatus.FAILURE, f"Provisioning failed: {reason}" if reason else "Provisioning failed")
        await queue_deletion(ctx, db, runner, "Provisioning failed")

        if task is not None and not task.is_stuck_replacement and task.retry_count + 1 < MAX_RETRIES:
            fresh = await add_runner(
                db,
                owner=runner.owner,
                size=runner.size,
                arch=runner.arch,
                profile=runner.profile,
                is_custom=runner.is_custom,
                use_private_network=runner.use_private_network,
                description=f"Replaces {hostname}, which failed to provision",
            )
            await ctx.create_queue.enqueue(
                replace(task, runner_id=fresh.id, retry_count=task.retry_count + 1, queued_at=datetime.utcnow()),
                db=db,
            )
            logger.info(f"Queued runner {fresh.id} to replace {hostname}")
        await db.commit()
    return True
