"""
Inbound CI demand signals.

The webhook layer (outside this package) translates GitHub ``workflow_job``
deliveries into these calls. Each call is idempotent with respect to
duplicate deliveries of the same job id.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select

from autoscaler.config import AutoScalerConfig, TargetType
from autoscaler.errors import ConfigurationError
from autoscaler.models.job import Job, JobState, WAITING_STATES
from autoscaler.models.runner import Runner, RunnerStatus
from autoscaler.services.context import FleetContext
from autoscaler.services.demand import queue_runner_creation
from autoscaler.services.ledger import (
    get_job_by_github_id,
    get_runner,
    get_runner_by_hostname,
    link_job_to_runner,
    quota_reached,
)
from autoscaler.services.reconciler import queue_deletion
from autoscaler.services.task_queue import CancellationKey

logger = logging.getLogger(__name__)

SELF_HOSTED_LABEL = "self-hosted"
PROFILE_LABEL_PREFIX = "profile-"
ARCH_LABELS = ("x64", "arm64")


def parse_labels(config: AutoScalerConfig, labels: Iterable[str]) -> Optional[tuple[str, str, str | None]]:
    """
    Work out (size, profile, arch) from a job's runs-on labels.

    Returns:
        None if the job isn't meant for our runners at all
    """
    labels = [label.lower() for label in labels]
    arch = next((label for label in labels if label in ARCH_LABELS), None)

    size = None
    for label in labels:
        if config.find_size(label, arch) is not None:
            size = label
            break

    profile = "default"
    for label in labels:
        if label.startswith(PROFILE_LABEL_PREFIX) and len(label) > len(PROFILE_LABEL_PREFIX):
            profile = label[len(PROFILE_LABEL_PREFIX):]
            break

    if size is None:
        if SELF_HOSTED_LABEL not in labels:
            return None
        size = config.default_size
    return size, profile, arch


class JobEventService:
    """
    Applies CI job lifecycle signals to the ledger and task queues.

    Usage:
        events = JobEventService(ctx)
        await events.job_queued(123, "acme/app", ["self-hosted", "size-s"], "acme")
    """

    def __init__(self, ctx: FleetContext):
        self.ctx = ctx

    async def job_queued(
        self,
        job_id: int,
        repo: str,
        labels: Iterable[str],
        owner: str,
        target_type: TargetType = TargetType.ORG,
    ) -> Job | None:
        config = self.ctx.config.current
        parsed = parse_labels(config, labels)
        if parsed is None:
            logger.debug(f"Job {job_id} of {repo} doesn't target self-hosted runners, ignoring")
            return None
        size, profile, arch = parsed

        target = config.find_target(owner, repo if target_type == TargetType.REPO else None)
        if target is None:
            logger.warning(f"Job {job_id} queued for unknown target {owner} ({repo}), ignoring")
            return None

        async with self.ctx.session_factory() as db:
            existing = await get_job_by_github_id(db, job_id)
            if existing is not None:
                logger.info(f"Job {job_id} already known ({existing.state}), ignoring duplicate queued event")
                return existing

            job = Job(
                github_job_id=job_id,
                repository=repo,
                owner=owner,
                state=JobState.QUEUED.value,
                queue_time=datetime.utcnow(),
                requested_size=size,
                requested_profile=profile,
            )
            db.add(job)

            if await quota_reached(db, target.name, target.runner_quota):
                job.state = JobState.THROTTLED.value
                await db.commit()
                logger.warning(f"Job {job_id} throttled, quota of {target.runner_quota} reached for {target.name}")
                return job

            try:
                runner = await queue_runner_creation(
                    self.ctx, db, config, target, size, profile,
                    repo_name=repo,
                    arch=arch,
                    description=f"Runner queued for job {job_id}",
                )
            except ConfigurationError as e:
                await db.commit()
                logger.error(f"Can't queue a runner for job {job_id}: {e}")
                return job
            await db.commit()

        logger.info(f"Job {job_id} queued for {repo}, runner {runner.id} [{runner.arch}/{size}/{profile}] queued")
        return job

    async def job_in_progress(self, job_id: int, runner_name: str, job_url: str | None = None, repo: str | None = None) -> Job | None:
        async with self.ctx.session_factory() as db:
            job = await get_job_by_github_id(db, job_id)
            if job is None:
                if repo is None:
                    logger.warning(f"Job {job_id} in progress but never seen queued and no repo given")
                    return None
                job = Job(
                    github_job_id=job_id,
                    repository=repo,
                    owner=repo.split("/", 1)[0],
                    queue_time=datetime.utcnow(),
                    orphan=True,
                )
                db.add(job)
                await db.flush()
            job.job_url = job_url or job.job_url

            runner = await get_runner_by_hostname(db, runner_name) if runner_name else None
            if runner is None:
                job.state = JobState.IN_PROGRESS.value
                job.in_progress_time = datetime.utcnow()
                await db.commit()
                logger.info(f"Job {job_id} in progress on {runner_name}, which isn't one of ours")
                return job

            link_job_to_runner(job, runner)
            await db.commit()
        logger.info(f"Job {job_id} now in progress on {runner_name}")
        return job

    async def job_completed(self, job_id: int) -> Job | None:
        now = datetime.utcnow()
        async with self.ctx.session_factory() as db:
            job = await get_job_by_github_id(db, job_id)
            if job is None:
                logger.warning(f"Job {job_id} completed but is not on record")
                return None
            job.state = JobState.COMPLETED.value
            job.complete_time = now

            runner = await get_runner(db, job.runner_id) if job.runner_id is not None else None
            if runner is None:
                await db.commit()
                logger.info(f"Job {job_id} completed without a runner of ours")
                return job

            if runner.last_state not in (RunnerStatus.DELETION_QUEUED, RunnerStatus.DELETED):
                runner.is_online = False
                await queue_deletion(self.ctx, db, runner, f"Job {job_id} completed")
            await db.commit()

        machine_time = now - runner.creation_queued_time if runner.creation_queued_time else None
        logger.info(f"Job {job_id} completed on {runner.hostname}, machine time {machine_time}")
        return job

    async def job_cancelled(self, job_id: int) -> Job | None:
        """
        A queued job was cancelled before it got a runner.

        If a create task for its demand signature is still queued, the
        cancellation counter makes the executor skip one such task.
        """
        config = self.ctx.config.current
        async with self.ctx.session_factory() as db:
            job = await get_job_by_github_id(db, job_id)
            if job is None:
                logger.warning(f"Job {job_id} cancelled but is not on record")
                return None
            if job.state not in WAITING_STATES or job.runner_id is not None:
                logger.info(f"Job {job_id} is {job.state}, nothing to cancel")
                return job

            target = config.find_target(job.owner, job.repository)
            pending_ids = [t.runner_id for t in await self.ctx.create_queue.items() if t.repo_name == job.repository]
            pending = []
            if pending_ids and target is not None:
                result = await db.execute(
                    select(Runner).where(
                        Runner.id.in_(pending_ids),
                        Runner.owner == target.name,
                        Runner.size == job.requested_size,
                        Runner.profile == (job.requested_profile or "default"),
                    )
                )
                pending = list(result.scalars().all())

            was_throttled = job.state == JobState.THROTTLED.value
            job.state = JobState.CANCELLED.value
            job.complete_time = datetime.utcnow()
            await db.commit()

        if pending and not was_throttled:
            runner = pending[0]
            key = CancellationKey(
                owner=runner.owner,
                repository=job.repository,
                size=runner.size,
                profile=runner.profile,
                arch=runner.arch,
            )
            count = await self.ctx.cancellations.increment(key)
            logger.info(f"Job {job_id} cancelled, {count} pending creates for {key} will be skipped")
        else:
            logger.info(f"Job {job_id} cancelled, no pending create to skip")
        return job
