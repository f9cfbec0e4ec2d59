from datetime import datetime
from pydantic import BaseModel

from autoscaler.models.job import JobState


class JobRead(BaseModel):
    id: int
    github_job_id: int
    repository: str
    owner: str
    state: JobState
    queue_time: datetime | None = None
    in_progress_time: datetime | None = None
    complete_time: datetime | None = None
    job_url: str | None = None
    requested_size: str | None = None
    requested_profile: str | None = None
    runner_id: int | None = None
    orphan: bool = False

    class Config:
        from_attributes = True
