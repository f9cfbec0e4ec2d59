"""
Runner ledger queries and mutations.

All functions take the caller's AsyncSession and never commit on their own
unless stated, so a caller can group several changes in one transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from autoscaler.models.job import Job, JobState
from autoscaler.models.runner import ACTIVE_STATES, Runner, RunnerLifecycle, RunnerStatus
from autoscaler.services.lifecycle import append_event

logger = logging.getLogger(__name__)

RETENTION_HORIZON = timedelta(days=30)


def last_state_subquery():
    """(runner_id, status) of every runner's max-timestamp lifecycle event."""
    latest = (
        select(
            RunnerLifecycle.runner_id.label("runner_id"),
            func.max(RunnerLifecycle.event_time).label("event_time"),
        )
        .group_by(RunnerLifecycle.runner_id)
        .subquery()
    )
    return (
        select(RunnerLifecycle.runner_id, RunnerLifecycle.status)
        .join(
            latest,
            and_(
                RunnerLifecycle.runner_id == latest.c.runner_id,
                RunnerLifecycle.event_time == latest.c.event_time,
            ),
        )
        .subquery()
    )


async def get_runner(db: AsyncSession, runner_id: int) -> Runner | None:
    return await db.get(Runner, runner_id)


async def get_runner_by_hostname(db: AsyncSession, hostname: str) -> Runner | None:
    result = await db.execute(
        select(Runner).where(Runner.hostname == hostname).order_by(Runner.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def get_runner_by_server_id(db: AsyncSession, cloud: str, server_id: str) -> Runner | None:
    result = await db.execute(
        select(Runner)
        .where(Runner.cloud == cloud, Runner.cloud_server_id == server_id)
        .order_by(Runner.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_job(db: AsyncSession, job_id: int) -> Job | None:
    return await db.get(Job, job_id)


async def get_job_by_github_id(db: AsyncSession, github_job_id: int) -> Job | None:
    result = await db.execute(select(Job).where(Job.github_job_id == github_job_id))
    return result.scalar_one_or_none()


async def runners_in_states(
    db: AsyncSession,
    states: Iterable[RunnerStatus],
    owner: str | None = None,
) -> list[Runner]:
    """Runners whose derived state is one of states."""
    last = last_state_subquery()
    query = (
        select(Runner)
        .join(last, last.c.runner_id == Runner.id)
        .where(last.c.status.in_([s.value for s in states]))
    )
    if owner is not None:
        query = query.where(Runner.owner == owner)
    result = await db.execute(query.order_by(Runner.id))
    return list(result.scalars().all())


async def runners_not_in_states(
    db: AsyncSession,
    states: Iterable[RunnerStatus],
) -> list[Runner]:
    excluded = set(states)
    return await runners_in_states(db, [s for s in RunnerStatus if s not in excluded])


async def active_runner_count(db: AsyncSession, owner: str) -> int:
    """Runners counted against quota: last state ordered before DeletionQueued."""
    last = last_state_subquery()
    result = await db.execute(
        select(func.count())
        .select_from(Runner)
        .join(last, last.c.runner_id == Runner.id)
        .where(Runner.owner == owner, last.c.status.in_([s.value for s in ACTIVE_STATES]))
    )
    return result.scalar_one()


async def quota_reached(db: AsyncSession, owner: str, quota: int | None) -> bool:
    if quota is None:
        return False
    return await active_runner_count(db, owner) >= quota


async def pool_runner_count(db: AsyncSession, owner: str, size: str, profile: str) -> int:
    """
    Runners that satisfy a pool slot: online ones plus ones still booting.

    Booting runners (CreationQueued/Created) are counted so a slow boot
    doesn't trigger a second create for the same slot on the next pass.
    """
    last = last_state_subquery()
    booting = [RunnerStatus.CREATION_QUEUED.value, RunnerStatus.CREATED.value]
    alive = [s.value for s in ACTIVE_STATES]
    result = await db.execute(
        select(func.count())
        .select_from(Runner)
        .join(last, last.c.runner_id == Runner.id)
        .where(
            Runner.owner == owner,
            Runner.size == size,
            Runner.profile == profile,
            ((Runner.is_online == True) & last.c.status.in_(alive))  # noqa: E712
            | last.c.status.in_(booting),
        )
    )
    return result.scalar_one()


async def online_runners(db: AsyncSession, owner: str | None = None) -> list[Runner]:
    query = select(Runner).where(Runner.is_online == True)  # noqa: E712
    if owner is not None:
        query = query.where(Runner.owner == owner)
    result = await db.execute(query.order_by(Runner.id))
    return list(result.scalars().all())


def new_runner(
    *,
    owner: str,
    size: str,
    arch: str,
    profile: str = "default",
    is_custom: bool = False,
    use_private_network: bool = False,
    stuck_job_replacement: bool = False,
    description: str = "Runner queued for creation",
) -> Runner:
    """Build a runner whose first event is CreationQueued. Caller adds it to a session."""
    runner = Runner(
        owner=owner,
        size=size,
        arch=arch,
        profile=profile,
        is_custom=is_custom,
        use_private_network=use_private_network,
        stuck_job_replacement=stuck_job_replacement,
        is_online=False,
        lifecycle=[],
    )
    append_event(runner, RunnerStatus.CREATION_QUEUED, description)
    return runner


async def add_runner(db: AsyncSession, **kwargs) -> Runner:
    """Create and flush a CreationQueued runner so it has an id."""
    runner = new_runner(**kwargs)
    db.add(runner)
    await db.flush()
    return runner


def link_job_to_runner(job: Job, runner: Runner) -> None:
    """Tie a job and a runner together (both directions)."""
    runner.job_id = job.id
    job.runner_id = runner.id
    job.state = JobState.IN_PROGRESS.value
    job.in_progress_time = datetime.utcnow()
    append_event(runner, RunnerStatus.PROCESSING, f"Runner got picked by job {job.github_job_id}")


async def purge_expired(
    db: AsyncSession,
    horizon: timedelta = RETENTION_HORIZON,
    now: datetime | None = None,
) -> tuple[int, int]:
    """
    Delete runners whose whole lifecycle is older than horizon, and old jobs.

    The Runner <-> Job references are nulled in a separate statement first so
    neither delete trips over the other side.

    Returns:
        (runners_deleted, jobs_deleted)
    """
    cutoff = (now or datetime.utcnow()) - horizon

    stale_runner_ids = list(
        (
            await db.execute(
                select(RunnerLifecycle.runner_id)
                .group_by(RunnerLifecycle.runner_id)
                .having(func.max(RunnerLifecycle.event_time) < cutoff)
            )
        ).scalars()
    )
    stale_job_ids = list(
        (await db.execute(select(Job.id).where(Job.queue_time < cutoff))).scalars()
    )
    if not stale_runner_ids and not stale_job_ids:
        return 0, 0

    await db.execute(
        update(Runner)
        .where(Runner.id.in_(stale_runner_ids) | Runner.job_id.in_(stale_job_ids))
        .values(job_id=None)
    )
    await db.execute(
        update(Job)
        .where(Job.id.in_(stale_job_ids) | Job.runner_id.in_(stale_runner_ids))
        .values(runner_id=None)
    )
    await db.flush()

    await db.execute(delete(RunnerLifecycle).where(RunnerLifecycle.runner_id.in_(stale_runner_ids)))
    await db.execute(delete(Runner).where(Runner.id.in_(stale_runner_ids)))
    await db.execute(delete(Job).where(Job.id.in_(stale_job_ids)))
    await db.commit()

    logger.info(f"Retention sweep removed {len(stale_runner_ids)} runners and {len(stale_job_ids)} jobs")
    return len(stale_runner_ids), len(stale_job_ids)
