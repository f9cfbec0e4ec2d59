"""
Collaborators shared by the control loop, the demand signals and the API.

Passing one FleetContext around keeps every pass free of module globals, so
tests can build a context over an isolated database with fake substrates
and a fake GitHub.
"""

from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoscaler.config import ConfigProvider
from autoscaler.services.cloud.registry import CloudBanList, CloudRegistry
from autoscaler.services.error_reporting import ErrorReporter
from autoscaler.services.github import GitHubClient
from autoscaler.services.task_queue import (
    CancellationCounter,
    CreatedRunnersTracker,
    DurableTaskQueue,
    CreateRunnerTask,
    DeleteRunnerTask,
    create_task_queue,
    delete_task_queue,
)


@dataclass
class FleetContext:
    session_factory: async_sessionmaker[AsyncSession]
    config: ConfigProvider
    github: GitHubClient
    clouds: CloudRegistry
    bans: CloudBanList = field(default_factory=CloudBanList)
    reporter: ErrorReporter = field(default_factory=ErrorReporter)
    create_queue: DurableTaskQueue[CreateRunnerTask] = None
    delete_queue: DurableTaskQueue[DeleteRunnerTask] = None
    tracker: CreatedRunnersTracker = None
    cancellations: CancellationCounter = None

    def __post_init__(self):
        if self.create_queue is None:
            self.create_queue = create_task_queue(self.session_factory)
        if self.delete_queue is None:
            self.delete_queue = delete_task_queue(self.session_factory)
        if self.tracker is None:
            self.tracker = CreatedRunnersTracker(self.session_factory)
        if self.cancellations is None:
            self.cancellations = CancellationCounter(self.session_factory)
