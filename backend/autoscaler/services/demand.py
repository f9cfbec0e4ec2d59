"""
Demand side of the control loop: pool replenishment and stuck job replacement.

Both passes only ever create CreationQueued runners plus their create task.
Everything that touches a substrate happens later in the task executor.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autoscaler.config import AutoScalerConfig, TargetConfig, TargetType
from autoscaler.errors import ConfigurationError
from autoscaler.models.job import Job, JobState, WAITING_STATES
from autoscaler.models.runner import Runner
from autoscaler.services.context import FleetContext
from autoscaler.services.github import JOB_NOT_FOUND
from autoscaler.services.ledger import add_runner, pool_runner_count, quota_reached
from autoscaler.services.task_queue import CreateRunnerTask

logger = logging.getLogger(__name__)

STUCK_JOB_THRESHOLD = timedelta(minutes=10)
VANISH_THRESHOLD = timedelta(hours=2)
MAX_QUEUED_REPLACEMENTS = 25


async def queue_runner_creation(
    ctx: FleetContext,
    db: AsyncSession,
    config: AutoScalerConfig,
    target: TargetConfig,
    size: str,
    profile_name: str = "default",
    repo_name: str = "",
    stuck_job_id: int | None = None,
    description: str = "Runner queued for creation",
    arch: str | None = None,
) -> Runner:
    """
    Add a CreationQueued runner and its create task in the caller's transaction.

    Raises:
        ConfigurationError: If size or profile is not configured
    """
    machine_size = config.find_size(size, arch)
    if machine_size is None:
        raise ConfigurationError(f"Unknown arch and size combination [{arch or 'any'}/{size}]")
    profile = config.find_profile(profile_name)
    if profile is None:
        raise ConfigurationError(f"Unknown runner profile {profile_name!r}")

    runner = await add_runner(
        db,
        owner=target.name,
        size=size,
        arch=machine_size.arch,
        profile=profile.name,
        is_custom=profile.is_custom_image,
        use_private_network=profile.use_private_networks,
        stuck_job_replacement=stuck_job_id is not None,
        description=description,
    )
    await ctx.create_queue.enqueue(
        CreateRunnerTask(
            runner_id=runner.id,
            target_type=target.target,
            repo_name=repo_name or (target.name if target.target == TargetType.REPO else ""),
            is_stuck_replacement=stuck_job_id is not None,
            stuck_job_id=stuck_job_id,
        ),
        db=db,
    )
    return runner


async def replenish_pools(ctx: FleetContext, config: AutoScalerConfig) -> int:
    """
    Top up every configured pool to its desired size.

    Returns:
        Number of runners queued for creation
    """
    queued = 0
    for target in config.targets:
        if not target.pools:
            continue
        async with ctx.session_factory() as db:
            if await quota_reached(db, target.name, target.runner_quota):
                logger.warning(f"Quota of {target.runner_quota} reached for {target.name}, not replenishing pools")
                continue

            quota_hit = False
            for pool in target.pools:
                existing = await pool_runner_count(db, target.name, pool.size, pool.profile)
                missing = pool.num_runners - existing
                if missing <= 0:
                    continue

                logger.info(f"Pool {target.name}/{pool.size}/{pool.profile}: {existing} of {pool.num_runners}, queuing {missing}")
                for slot in range(missing):
                    if await quota_reached(db, target.name, target.runner_quota):
                        logger.warning(
                            f"Quota of {target.runner_quota} reached for {target.name}, "
                            f"pool {pool.size}/{pool.profile} is {missing - slot} short"
                        )
                        quota_hit = True
                        break
                    try:
                        await queue_runner_creation(
                            ctx, db, config, target, pool.size, pool.profile,
                            description="Pool runner queued for creation",
                        )
                    except ConfigurationError as e:
                        logger.error(f"Pool {target.name}/{pool.size} misconfigured: {e}")
                        break
                    await db.commit()
                    queued += 1
                if quota_hit:
                    break
    return queued


async def _reclassify(db: AsyncSession, job: Job, platform_status: str, now: datetime) -> None:
    if platform_status == "completed":
        job.state = JobState.COMPLETED.value
        job.complete_time = job.complete_time or now
    else:
        job.state = JobState.VANISHED.value
    await db.commit()
    logger.info(f"Stuck job {job.github_job_id} is {platform_status} on GitHub, marked {job.state}")


async def check_stuck_jobs(ctx: FleetContext, config: AutoScalerConfig, now: datetime | None = None) -> int:
    """
    Find jobs waiting too long without a runner and queue a replacement runner.

    Returns:
        Number of replacement runners queued
    """
    now = now or datetime.utcnow()
    queued = 0

    async with ctx.session_factory() as db:
        result = await db.execute(
            select(Job)
            .where(
                Job.state.in_(WAITING_STATES),
                Job.queue_time < now - STUCK_JOB_THRESHOLD,
                Job.runner_id.is_(None),
            )
            .order_by(Job.queue_time)
        )
        stuck_jobs = list(result.scalars().all())
        if not stuck_jobs:
            return 0

        pending = await ctx.create_queue.items()
        replacing = {t.stuck_job_id for t in pending if t.is_stuck_replacement}
        replacement_count = sum(1 for t in pending if t.is_stuck_replacement)

        for job in stuck_jobs:
            target = config.find_target(job.owner, job.repository)
            if target is None:
                logger.debug(f"Stuck job {job.github_job_id} has no configured target, ignoring")
                continue

            info = None
            if now - job.queue_time > VANISH_THRESHOLD:
                info = await ctx.github.get_job_info(job.github_job_id, job.repository, target.github_token)
                if info is None:
                    logger.warning(f"Could not check job {job.github_job_id} on GitHub, skipping")
                    continue
                if info.status != "queued":
                    job.state = JobState.VANISHED.value
                    await db.commit()
                    logger.info(f"Job {job.github_job_id} queued for over {VANISH_THRESHOLD}, marked vanished")
                    continue

            if await quota_reached(db, target.name, target.runner_quota):
                if job.state != JobState.THROTTLED.value:
                    job.state = JobState.THROTTLED.value
                    await db.commit()
                    logger.warning(f"Job {job.github_job_id} throttled, quota reached for {target.name}")
                continue

            if job.state == JobState.THROTTLED.value:
                # Wait one more pass before spending a GitHub call on it
                job.state = JobState.QUEUED.value
                await db.commit()
                logger.info(f"Job {job.github_job_id} unthrottled, quota available for {target.name}")
                continue

            if job.id in replacing:
                logger.debug(f"Replacement for stuck job {job.github_job_id} is already queued")
                continue
            if replacement_count > MAX_QUEUED_REPLACEMENTS:
                logger.warning(f"{replacement_count} stuck replacements already queued, skipping job {job.github_job_id}")
                continue

            if info is None:
                info = await ctx.github.get_job_info(job.github_job_id, job.repository, target.github_token)
            if info is None:
                logger.warning(f"Could not check stuck job {job.github_job_id} on GitHub, skipping")
                continue
            if info.status != "queued":
                await _reclassify(db, job, "vanished" if info.status == JOB_NOT_FOUND else info.status, now)
                continue

            try:
                await queue_runner_creation(
                    ctx, db, config, target,
                    size=job.requested_size or config.default_size,
                    profile_name=job.requested_profile or "default",
                    repo_name=job.repository,
                    stuck_job_id=job.id,
                    description=f"Replacement runner for stuck job {job.github_job_id}",
                )
            except ConfigurationError as e:
                logger.error(f"Can't replace runner for stuck job {job.github_job_id}: {e}")
                continue
            await db.commit()
            replacing.add(job.id)
            replacement_count += 1
            queued += 1
            logger.warning(f"Job {job.github_job_id} stuck since {job.queue_time.isoformat()}, queued replacement runner")

    return queued
