"""
Runner ledger records.

A runner's state is never stored on the row. It is always the status of the
lifecycle event with the greatest timestamp, see ``latest_event``.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from autoscaler.database import Base


class RunnerStatus(str, Enum):
    """
    Lifecycle statuses, in severity order.

    Happy path:
        CREATION_QUEUED -> CREATED -> PROVISIONED -> PROCESSING -> DELETED
    Side states:
        DELETION_QUEUED, CLEANUP (reachable from most states)
        FAILURE (anywhere, not terminal until retries are exhausted)
        CANCELLED (terminal, only from CREATION_QUEUED)
    """
    CREATION_QUEUED = "creation_queued"
    CREATED = "created"
    PROVISIONED = "provisioned"
    PROCESSING = "processing"
    DELETION_QUEUED = "deletion_queued"
    DELETED = "deleted"
    FAILURE = "failure"
    VANISHED_ON_CLOUD = "vanished_on_cloud"
    CLEANUP = "cleanup"
    CANCELLED = "cancelled"


STATUS_ORDER: list[RunnerStatus] = list(RunnerStatus)

# Runners in these states count against a target's quota
ACTIVE_STATES: frozenset[RunnerStatus] = frozenset(
    s for s in STATUS_ORDER if STATUS_ORDER.index(s) < STATUS_ORDER.index(RunnerStatus.DELETION_QUEUED)
)


class RunnerLifecycle(Base):
    __tablename__ = "runner_lifecycle"
    __table_args__ = (
        Index("ix_runner_lifecycle_runner_time", "runner_id", "event_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    runner_id: Mapped[int] = mapped_column(Integer, ForeignKey("runners.id"), nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    event: Mapped[str] = mapped_column(Text, default="")

    def __repr__(self) -> str:
        return f"RunnerLifecycle({self.status} at {self.event_time}: {self.event})"


def latest_event(events: list[RunnerLifecycle]) -> RunnerLifecycle | None:
    """Fold over a lifecycle sequence and return its max-timestamp event."""
    latest = None
    for event in events:
        if latest is None or event.event_time >= latest.event_time:
            latest = event
    return latest


class Runner(Base):
    __tablename__ = "runners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hostname: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    cloud: Mapped[str | None] = mapped_column(String(32), nullable=True)
    size: Mapped[str] = mapped_column(String(64), nullable=False)
    arch: Mapped[str] = mapped_column(String(16), default="x64")
    profile: Mapped[str] = mapped_column(String(64), default="default")
    owner: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    ipv4: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cloud_server_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stuck_job_replacement: Mapped[bool] = mapped_column(Boolean, default=False)
    use_private_network: Mapped[bool] = mapped_column(Boolean, default=False)
    # Pull-based bootstrap for substrates that can't take user data
    provision_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    provision_payload: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Runner <-> Job is 1:1 in both directions. Only this side carries a real
    # foreign key so the schema has no cycle; jobs.runner_id is a plain column.
    job_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("jobs.id"), nullable=True)

    lifecycle: Mapped[list[RunnerLifecycle]] = relationship(
        "RunnerLifecycle",
        order_by=RunnerLifecycle.event_time,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def last_event(self) -> RunnerLifecycle | None:
        return latest_event(self.lifecycle)

    @property
    def last_state(self) -> RunnerStatus | None:
        event = self.last_event
        return RunnerStatus(event.status) if event else None

    @property
    def last_state_time(self) -> datetime | None:
        event = self.last_event
        return event.event_time if event else None

    @property
    def creation_queued_time(self) -> datetime | None:
        """Time of the first CreationQueued event, i.e. the runner's birth."""
        times = [
            e.event_time for e in self.lifecycle
            if e.status == RunnerStatus.CREATION_QUEUED.value
        ]
        return min(times) if times else None

    def count_events(self, status: RunnerStatus) -> int:
        return sum(1 for e in self.lifecycle if e.status == status.value)

    def __repr__(self) -> str:
        return f"Runner(id={self.id}, hostname={self.hostname!r}, cloud={self.cloud!r}, state={self.last_state})"
