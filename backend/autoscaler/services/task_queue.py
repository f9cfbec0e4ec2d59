"""
Durable task queues backed by the ledger database.

Provides:
- DurableTaskQueue: FIFO create/delete work queues (enqueue / try_dequeue)
- CreatedRunnersTracker: in-flight provisioning map keyed by hostname
- CancellationCounter: per demand-signature pending-skip counts

Every operation runs in its own short transaction, so a fresh queue object
over the same session factory sees exactly what a previous process left.
Delivery is at-least-once only if the caller re-enqueues a failed task; the
queue never redelivers on its own.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Callable, Generic, NamedTuple, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoscaler.config import TargetType
from autoscaler.models.queue import (
    CancelledRunnersCounter,
    CreatedRunnersTracking,
    CreateTaskQueue,
    DeleteTaskQueue,
)

logger = logging.getLogger(__name__)


@dataclass
class CreateRunnerTask:
    runner_id: int
    target_type: TargetType = TargetType.ORG
    repo_name: str = ""
    retry_count: int = 0
    is_stuck_replacement: bool = False
    stuck_job_id: int | None = None  # ledger id of the job this replaces a runner for
    queued_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class DeleteRunnerTask:
    runner_id: int
    server_id: str | None = None
    retry_count: int = 0
    queued_at: datetime = field(default_factory=datetime.utcnow)


T = TypeVar("T", CreateRunnerTask, DeleteRunnerTask)


def _task_to_row(task, row_cls):
    values = asdict(task)
    if "target_type" in values:
        values["target_type"] = TargetType(values["target_type"]).value
    return row_cls(**values)


def _row_to_task(row, task_cls):
    values = {f.name: getattr(row, f.name) for f in fields(task_cls)}
    if "target_type" in values:
        values["target_type"] = TargetType(values["target_type"])
    return task_cls(**values)


class DurableTaskQueue(Generic[T]):
    """
    FIFO queue persisted as a table.

    Usage:
        queue = DurableTaskQueue(session_factory, CreateTaskQueue, CreateRunnerTask)
        await queue.enqueue(CreateRunnerTask(runner_id=42))
        task = await queue.try_dequeue()   # None when empty
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        row_cls,
        task_cls: type[T],
        name: str | None = None,
    ):
        self._session_factory = session_factory
        self._row_cls = row_cls
        self._task_cls = task_cls
        self.name = name or row_cls.__tablename__

    async def enqueue(self, task: T, db: AsyncSession | None = None) -> int:
        """
        Append a task durably and return its sequence number.

        With db given the row joins the caller's transaction (flushed, not
        committed), so a runner and its task can be committed together.
        """
        if db is not None:
            row = _task_to_row(task, self._row_cls)
            db.add(row)
            await db.flush()
            return row.id
        async with self._session_factory() as db:
            row = _task_to_row(task, self._row_cls)
            db.add(row)
            await db.commit()
            logger.debug(f"Enqueued {self._task_cls.__name__} #{row.id} for runner {task.runner_id} on {self.name}")
            return row.id

    async def try_dequeue(self) -> T | None:
        """Pop the oldest task, or return None if the queue is empty."""
        while True:
            async with self._session_factory() as db:
                row = (
                    await db.execute(select(self._row_cls).order_by(self._row_cls.id).limit(1))
                ).scalar_one_or_none()
                if row is None:
                    return None
                task = _row_to_task(row, self._task_cls)
                result = await db.execute(delete(self._row_cls).where(self._row_cls.id == row.id))
                await db.commit()
                if result.rowcount == 1:
                    return task
            # Another consumer took it between select and delete, try the next one

    async def count(self) -> int:
        async with self._session_factory() as db:
            return (await db.execute(select(func.count()).select_from(self._row_cls))).scalar_one()

    async def items(self) -> list[T]:
        """Snapshot of queued tasks, oldest first, without dequeuing."""
        async with self._session_factory() as db:
            rows = (await db.execute(select(self._row_cls).order_by(self._row_cls.id))).scalars().all()
            return [_row_to_task(row, self._task_cls) for row in rows]

    async def count_where(self, predicate: Callable[[T], bool]) -> int:
        return sum(1 for task in await self.items() if predicate(task))

    async def any(self, predicate: Callable[[T], bool]) -> bool:
        return any(predicate(task) for task in await self.items())


class CreatedRunnersTracker:
    """Maps hostnames of freshly created machines to their create task."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def try_add(self, hostname: str, task: CreateRunnerTask) -> bool:
        """Track a created machine. Returns False if hostname is already tracked."""
        async with self._session_factory() as db:
            values = asdict(task)
            values["target_type"] = TargetType(values["target_type"]).value
            db.add(CreatedRunnersTracking(hostname=hostname, **values))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.warning(f"Hostname {hostname} is already tracked as in-flight")
                return False
            return True

    async def get(self, hostname: str) -> CreateRunnerTask | None:
        async with self._session_factory() as db:
            row = await db.get(CreatedRunnersTracking, hostname)
            return self._to_task(row) if row else None

    async def try_remove(self, hostname: str) -> CreateRunnerTask | None:
        """Stop tracking hostname and return the create task it was stored with."""
        async with self._session_factory() as db:
            row = await db.get(CreatedRunnersTracking, hostname)
            if row is None:
                return None
            task = self._to_task(row)
            result = await db.execute(
                delete(CreatedRunnersTracking).where(CreatedRunnersTracking.hostname == hostname)
            )
            await db.commit()
            return task if result.rowcount == 1 else None

    async def count(self) -> int:
        async with self._session_factory() as db:
            return (await db.execute(select(func.count()).select_from(CreatedRunnersTracking))).scalar_one()

    @staticmethod
    def _to_task(row: CreatedRunnersTracking) -> CreateRunnerTask:
        return CreateRunnerTask(
            runner_id=row.runner_id,
            target_type=TargetType(row.target_type),
            repo_name=row.repo_name,
            retry_count=row.retry_count,
            is_stuck_replacement=row.is_stuck_replacement,
            stuck_job_id=row.stuck_job_id,
            queued_at=row.queued_at,
        )


class CancellationKey(NamedTuple):
    owner: str
    repository: str
    size: str
    profile: str
    arch: str


class CancellationCounter:
    """
    Counts create tasks that should be skipped because their job was cancelled.

    consume() is a single conditional UPDATE, so concurrent executors can't
    both skip on the same cancellation.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _where(key: CancellationKey):
        return (
            (CancelledRunnersCounter.owner == key.owner)
            & (CancelledRunnersCounter.repository == key.repository)
            & (CancelledRunnersCounter.size == key.size)
            & (CancelledRunnersCounter.profile == key.profile)
            & (CancelledRunnersCounter.arch == key.arch)
        )

    async def _ensure_row(self, db: AsyncSession, key: CancellationKey) -> None:
        exists = (
            await db.execute(select(CancelledRunnersCounter.id).where(self._where(key)))
        ).scalar_one_or_none()
        if exists is not None:
            return
        db.add(CancelledRunnersCounter(count=0, **key._asdict()))
        try:
            await db.commit()
        except IntegrityError:
            # Created concurrently, which is just as good
            await db.rollback()

    async def increment(self, key: CancellationKey) -> int:
        async with self._session_factory() as db:
            await self._ensure_row(db, key)
            await db.execute(
                update(CancelledRunnersCounter)
                .where(self._where(key))
                .values(count=CancelledRunnersCounter.count + 1)
            )
            await db.commit()
            return await self._get(db, key)

    async def consume(self, key: CancellationKey) -> bool:
        """
        Decrement the count for key if it is positive.

        Returns:
            True if the caller must skip its pending create, False otherwise
            (the count is then left at, or initialised to, zero)
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(CancelledRunnersCounter)
                .where(self._where(key) & (CancelledRunnersCounter.count > 0))
                .values(count=CancelledRunnersCounter.count - 1)
            )
            await db.commit()
            if result.rowcount == 1:
                return True
            await self._ensure_row(db, key)
            return False

    async def get(self, key: CancellationKey) -> int:
        async with self._session_factory() as db:
            return await self._get(db, key)

    async def _get(self, db: AsyncSession, key: CancellationKey) -> int:
        value = (
            await db.execute(select(CancelledRunnersCounter.count).where(self._where(key)))
        ).scalar_one_or_none()
        return value or 0


def create_task_queue(session_factory) -> DurableTaskQueue[CreateRunnerTask]:
    return DurableTaskQueue(session_factory, CreateTaskQueue, CreateRunnerTask, name="create")


def delete_task_queue(session_factory) -> DurableTaskQueue[DeleteRunnerTask]:
    return DurableTaskQueue(session_factory, DeleteTaskQueue, DeleteRunnerTask, name="delete")
