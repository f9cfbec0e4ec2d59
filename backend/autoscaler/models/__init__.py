from autoscaler.models.job import Job, JobState, WAITING_STATES
from autoscaler.models.runner import (
    ACTIVE_STATES,
    Runner,
    RunnerLifecycle,
    RunnerStatus,
    STATUS_ORDER,
    latest_event,
)
from autoscaler.models.queue import (
    CancelledRunnersCounter,
    CreatedRunnersTracking,
    CreateTaskQueue,
    DeleteTaskQueue,
)

__all__ = [
    "Job",
    "JobState",
    "WAITING_STATES",
    "Runner",
    "RunnerLifecycle",
    "RunnerStatus",
    "ACTIVE_STATES",
    "STATUS_ORDER",
    "latest_event",
    "CreateTaskQueue",
    "DeleteTaskQueue",
    "CreatedRunnersTracking",
    "CancelledRunnersCounter",
]
