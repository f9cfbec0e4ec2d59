"""
Runner lifecycle state machine.

State is derived, never stored: a transition is the append of a new event
whose timestamp is strictly later than every existing event of the runner.

State flow:
    CREATION_QUEUED -> CREATED -> PROVISIONED -> PROCESSING -> DELETED
                 \\-> CANCELLED
    any -> FAILURE | DELETION_QUEUED | CLEANUP | VANISHED_ON_CLOUD
    FAILURE -> CREATION_QUEUED (retry)
"""

from datetime import datetime, timedelta

from autoscaler.errors import InvalidLifecycleTransitionError
from autoscaler.models.runner import Runner, RunnerLifecycle, RunnerStatus

# Statuses that can only follow specific predecessors. Anything not listed
# here may follow any state.
RESTRICTED_PREDECESSORS: dict[RunnerStatus, set[RunnerStatus | None]] = {
    RunnerStatus.CANCELLED: {RunnerStatus.CREATION_QUEUED},
    RunnerStatus.CREATED: {RunnerStatus.CREATION_QUEUED},
}


def can_transition(from_state: RunnerStatus | None, to_state: RunnerStatus) -> bool:
    """
    Check whether an event with status to_state may follow from_state.

    Args:
        from_state: Current derived state (None for a runner with no events)
        to_state: Status of the event about to be appended

    Returns:
        True if the event is allowed
    """
    if from_state is None:
        return to_state == RunnerStatus.CREATION_QUEUED
    allowed = RESTRICTED_PREDECESSORS.get(to_state)
    if allowed is None:
        return True
    return from_state in allowed


def next_event_time(runner: Runner, now: datetime | None = None) -> datetime:
    """Pick a timestamp strictly later than the runner's latest event."""
    now = now or datetime.utcnow()
    last = runner.last_state_time
    if last is not None and now <= last:
        return last + timedelta(microseconds=1)
    return now


def append_event(
    runner: Runner,
    status: RunnerStatus,
    description: str = "",
    now: datetime | None = None,
) -> RunnerLifecycle:
    """
    Append a lifecycle event, making status the runner's new state.

    Args:
        runner: Runner whose lifecycle is loaded (or a fresh, unsaved runner)
        status: New status
        description: Free-text reason
        now: Override for the event time (tests, backfills)

    Returns:
        The appended event

    Raises:
        InvalidLifecycleTransitionError: If status cannot follow the current state
    """
    current = runner.last_state
    if not can_transition(current, status):
        raise InvalidLifecycleTransitionError(runner.id, current, status)

    event = RunnerLifecycle(
        event_time=next_event_time(runner, now),
        status=status.value,
        event=description,
    )
    runner.lifecycle.append(event)
    return event
