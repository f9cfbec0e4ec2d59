"""
Durable queue tables.

These back the create/delete work queues, the in-flight provisioning map and
the cancellation counters. The auto-increment id of a queue row is its
sequence number, so the oldest entry is the one with the lowest id.
"""
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from autoscaler.database import Base


class CreateTaskQueue(Base):
    __tablename__ = "create_task_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    target_type: Mapped[str] = mapped_column(String(16), default="org")
    repo_name: Mapped[str] = mapped_column(String(255), default="")
    runner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    is_stuck_replacement: Mapped[bool] = mapped_column(Boolean, default=False)
    stuck_job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class DeleteTaskQueue(Base):
    __tablename__ = "delete_task_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    server_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    runner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    queued_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class CreatedRunnersTracking(Base):
    """Create tasks whose machine exists but has not reported back yet."""
    __tablename__ = "created_runners_tracking"

    hostname: Mapped[str] = mapped_column(String(255), primary_key=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    target_type: Mapped[str] = mapped_column(String(16), default="org")
    repo_name: Mapped[str] = mapped_column(String(255), default="")
    runner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    is_stuck_replacement: Mapped[bool] = mapped_column(Boolean, default=False)
    stuck_job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class CancelledRunnersCounter(Base):
    __tablename__ = "cancelled_runners_counters"
    __table_args__ = (
        UniqueConstraint("owner", "repository", "size", "profile", "arch", name="uq_cancelled_signature"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner: Mapped[str] = mapped_column(String(255), default="")
    repository: Mapped[str] = mapped_column(String(255), default="")
    size: Mapped[str] = mapped_column(String(64), default="")
    profile: Mapped[str] = mapped_column(String(64), default="")
    arch: Mapped[str] = mapped_column(String(16), default="")
    count: Mapped[int] = mapped_column(Integer, default=0)
