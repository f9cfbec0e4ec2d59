from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from autoscaler.database import Base


class JobState(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VANISHED = "vanished"
    CANCELLED = "cancelled"
    THROTTLED = "throttled"  # queued, but withheld because the target's quota is exhausted


# Both represent the same unmet demand
WAITING_STATES = (JobState.QUEUED.value, JobState.THROTTLED.value)


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    github_job_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True, nullable=False)
    repository: Mapped[str] = mapped_column(String(255), nullable=False)
    owner: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(32), default=JobState.QUEUED.value, index=True)
    queue_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    in_progress_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    complete_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    job_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_size: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requested_profile: Mapped[str | None] = mapped_column(String(64), nullable=True)
    runner_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    orphan: Mapped[bool] = mapped_column(Boolean, default=False)

    def __repr__(self) -> str:
        return f"Job(id={self.id}, github_job_id={self.github_job_id}, state={self.state})"
