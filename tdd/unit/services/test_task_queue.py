"""
Unit tests for task_queue.py - durable queues, tracker and cancellation counter.

These tests verify:
- FIFO order and empty-queue behavior
- Queued tasks survive a restart (a fresh queue over the same database)
- Enqueue inside a caller's transaction
- In-flight tracking keyed by hostname
- Cancellation counts never go below zero
"""
import sys
from datetime import datetime
from pathlib import Path

import pytest

# Add backend to path for imports
backend_path = Path(__file__).parent.parent.parent.parent / "backend"
sys.path.insert(0, str(backend_path))

from autoscaler.config import TargetType
from autoscaler.services.task_queue import (
    CancellationCounter,
    CancellationKey,
    CreatedRunnersTracker,
    CreateRunnerTask,
    DeleteRunnerTask,
    create_task_queue,
    delete_task_queue,
)


@pytest.fixture
def create_queue(session_factory):
    return create_task_queue(session_factory)


@pytest.fixture
def delete_queue(session_factory):
    return delete_task_queue(session_factory)


KEY = CancellationKey(owner="acme", repository="acme/app", size="size-s", profile="default", arch="x64")


# -----------------------------------------------------------------------------
# DurableTaskQueue Tests
# -----------------------------------------------------------------------------

class TestDurableTaskQueue:
    """Tests for DurableTaskQueue."""

    async def test_dequeue_empty_returns_none(self, create_queue):
        assert await create_queue.try_dequeue() is None

    async def test_fifo_order(self, create_queue):
        """Tasks come out in the order they were enqueued."""
        for runner_id in (3, 1, 2):
            await create_queue.enqueue(CreateRunnerTask(runner_id=runner_id))

        dequeued = [(await create_queue.try_dequeue()).runner_id for _ in range(3)]
        assert dequeued == [3, 1, 2]
        assert await create_queue.try_dequeue() is None

    async def test_task_fields_round_trip(self, create_queue):
        task = CreateRunnerTask(
            runner_id=5,
            target_type=TargetType.REPO,
            repo_name="acme/special",
            retry_count=2,
            is_stuck_replacement=True,
            stuck_job_id=11,
        )
        await create_queue.enqueue(task)

        got = await create_queue.try_dequeue()
        assert got.target_type == TargetType.REPO
        assert got.repo_name == "acme/special"
        assert got.retry_count == 2
        assert got.is_stuck_replacement is True
        assert got.stuck_job_id == 11

    async def test_survives_restart(self, session_factory):
        """A new queue object over the same database sees what the old one left."""
        before = delete_task_queue(session_factory)
        await before.enqueue(DeleteRunnerTask(runner_id=1, server_id="srv-1"))
        await before.enqueue(DeleteRunnerTask(runner_id=2, server_id="srv-2"))

        after = delete_task_queue(session_factory)
        assert await after.count() == 2
        first = await after.try_dequeue()
        assert (first.runner_id, first.server_id) == (1, "srv-1")

    async def test_enqueue_in_callers_transaction(self, create_queue, session_factory):
        """A task enqueued with db is only visible once the caller commits."""
        async with session_factory() as db:
            await create_queue.enqueue(CreateRunnerTask(runner_id=9), db=db)
            await db.rollback()
        assert await create_queue.count() == 0

        async with session_factory() as db:
            await create_queue.enqueue(CreateRunnerTask(runner_id=9), db=db)
            await db.commit()
        assert await create_queue.count() == 1

    async def test_items_does_not_dequeue(self, create_queue):
        await create_queue.enqueue(CreateRunnerTask(runner_id=1, is_stuck_replacement=True))
        await create_queue.enqueue(CreateRunnerTask(runner_id=2))

        assert [t.runner_id for t in await create_queue.items()] == [1, 2]
        assert await create_queue.count_where(lambda t: t.is_stuck_replacement) == 1
        assert await create_queue.any(lambda t: t.runner_id == 2)
        assert await create_queue.count() == 2


# -----------------------------------------------------------------------------
# CreatedRunnersTracker Tests
# -----------------------------------------------------------------------------

class TestCreatedRunnersTracker:
    """Tests for CreatedRunnersTracker."""

    async def test_add_and_remove(self, session_factory):
        tracker = CreatedRunnersTracker(session_factory)
        task = CreateRunnerTask(runner_id=4, repo_name="acme/app", retry_count=1)

        assert await tracker.try_add("gh-one", task)
        assert await tracker.count() == 1

        removed = await tracker.try_remove("gh-one")
        assert removed.runner_id == 4
        assert removed.repo_name == "acme/app"
        assert removed.retry_count == 1
        assert await tracker.try_remove("gh-one") is None

    async def test_stored_task_reads_back_unchanged(self, session_factory):
        tracker = CreatedRunnersTracker(session_factory)
        task = CreateRunnerTask(
            runner_id=5,
            target_type=TargetType.REPO,
            repo_name="acme/special",
            retry_count=2,
            is_stuck_replacement=True,
            stuck_job_id=11,
            queued_at=datetime(2026, 3, 1, 12, 30, 15, 250),
        )
        assert await tracker.try_add("gh-two", task)

        assert await tracker.get("gh-two") == task
        assert await tracker.try_remove("gh-two") == task

    async def test_duplicate_hostname_rejected(self, session_factory):
        tracker = CreatedRunnersTracker(session_factory)
        assert await tracker.try_add("gh-one", CreateRunnerTask(runner_id=1))
        assert not await tracker.try_add("gh-one", CreateRunnerTask(runner_id=2))
        assert (await tracker.get("gh-one")).runner_id == 1


# -----------------------------------------------------------------------------
# CancellationCounter Tests
# -----------------------------------------------------------------------------

class TestCancellationCounter:
    """Tests for CancellationCounter."""

    async def test_consume_without_cancellations(self, session_factory):
        """Nothing to skip leaves the count at zero."""
        counter = CancellationCounter(session_factory)
        assert not await counter.consume(KEY)
        assert await counter.get(KEY) == 0

    async def test_increment_then_consume(self, session_factory):
        counter = CancellationCounter(session_factory)
        assert await counter.increment(KEY) == 1
        assert await counter.increment(KEY) == 2

        assert await counter.consume(KEY)
        assert await counter.consume(KEY)
        assert not await counter.consume(KEY)
        assert await counter.get(KEY) == 0

    async def test_keys_are_independent(self, session_factory):
        counter = CancellationCounter(session_factory)
        await counter.increment(KEY)
        other = KEY._replace(arch="arm64")
        assert not await counter.consume(other)
        assert await counter.get(KEY) == 1
