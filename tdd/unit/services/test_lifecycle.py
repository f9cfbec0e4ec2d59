"""
Unit tests for lifecycle.py - the runner state machine.

These tests verify:
- Which statuses may follow which
- Appended events are strictly later than every existing event
- Invalid transitions raise without touching the lifecycle
"""
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add backend to path for imports
backend_path = Path(__file__).parent.parent.parent.parent / "backend"
sys.path.insert(0, str(backend_path))

from autoscaler.errors import InvalidLifecycleTransitionError
from autoscaler.models import Runner, RunnerStatus
from autoscaler.services.lifecycle import append_event, can_transition, next_event_time


def fresh_runner() -> Runner:
    return Runner(id=7, owner="acme", size="size-s", arch="x64", lifecycle=[])


class TestCanTransition:
    """Tests for can_transition()."""

    def test_first_event_must_be_creation_queued(self):
        """A runner is born CreationQueued and nothing else."""
        assert can_transition(None, RunnerStatus.CREATION_QUEUED)
        assert not can_transition(None, RunnerStatus.CREATED)
        assert not can_transition(None, RunnerStatus.DELETED)

    def test_created_only_from_creation_queued(self):
        assert can_transition(RunnerStatus.CREATION_QUEUED, RunnerStatus.CREATED)
        assert not can_transition(RunnerStatus.FAILURE, RunnerStatus.CREATED)
        assert not can_transition(RunnerStatus.PROVISIONED, RunnerStatus.CREATED)

    def test_cancelled_only_from_creation_queued(self):
        assert can_transition(RunnerStatus.CREATION_QUEUED, RunnerStatus.CANCELLED)
        assert not can_transition(RunnerStatus.CREATED, RunnerStatus.CANCELLED)

    def test_failure_then_retry(self):
        """A failed create may be queued again."""
        assert can_transition(RunnerStatus.CREATION_QUEUED, RunnerStatus.FAILURE)
        assert can_transition(RunnerStatus.FAILURE, RunnerStatus.CREATION_QUEUED)

    @pytest.mark.parametrize("status", [
        RunnerStatus.DELETION_QUEUED,
        RunnerStatus.CLEANUP,
        RunnerStatus.VANISHED_ON_CLOUD,
        RunnerStatus.FAILURE,
    ])
    def test_side_states_reachable_from_processing(self, status):
        assert can_transition(RunnerStatus.PROCESSING, status)


class TestAppendEvent:
    """Tests for append_event()."""

    def test_append_sets_state(self):
        runner = fresh_runner()
        append_event(runner, RunnerStatus.CREATION_QUEUED, "queued")
        append_event(runner, RunnerStatus.CREATED, "created")
        assert runner.last_state == RunnerStatus.CREATED
        assert [e.event for e in runner.lifecycle] == ["queued", "created"]

    def test_same_instant_is_nudged_forward(self):
        """Two events at the same clock reading still order strictly."""
        runner = fresh_runner()
        now = datetime(2026, 3, 1, 8, 0, 0)
        first = append_event(runner, RunnerStatus.CREATION_QUEUED, now=now)
        second = append_event(runner, RunnerStatus.CREATED, now=now)
        assert second.event_time > first.event_time
        assert runner.last_state == RunnerStatus.CREATED

    def test_clock_going_backwards_still_orders(self):
        runner = fresh_runner()
        now = datetime(2026, 3, 1, 8, 0, 0)
        append_event(runner, RunnerStatus.CREATION_QUEUED, now=now)
        event = append_event(runner, RunnerStatus.FAILURE, now=now - timedelta(minutes=5))
        assert event.event_time > now
        assert runner.last_state == RunnerStatus.FAILURE

    def test_invalid_transition_raises(self):
        runner = fresh_runner()
        append_event(runner, RunnerStatus.CREATION_QUEUED)
        append_event(runner, RunnerStatus.CREATED)
        append_event(runner, RunnerStatus.PROVISIONED)

        with pytest.raises(InvalidLifecycleTransitionError) as exc_info:
            append_event(runner, RunnerStatus.CANCELLED)

        assert exc_info.value.runner_id == 7
        assert "provisioned -> cancelled" in str(exc_info.value)
        assert len(runner.lifecycle) == 3

    def test_next_event_time_uses_now_when_later(self):
        runner = fresh_runner()
        now = datetime(2026, 3, 1, 8, 0, 0)
        append_event(runner, RunnerStatus.CREATION_QUEUED, now=now)
        later = now + timedelta(seconds=1)
        assert next_event_time(runner, later) == later
