from datetime import datetime
from pydantic import BaseModel

from autoscaler.models.runner import RunnerStatus


class LifecycleEventRead(BaseModel):
    event_time: datetime
    status: RunnerStatus
    event: str = ""

    class Config:
        from_attributes = True


class RunnerRead(BaseModel):
    id: int
    hostname: str | None = None
    cloud: str | None = None
    size: str
    arch: str
    profile: str
    owner: str
    is_custom: bool = False
    is_online: bool = False
    ipv4: str | None = None
    cloud_server_id: str | None = None
    stuck_job_replacement: bool = False
    use_private_network: bool = False
    provision_id: str | None = None
    job_id: int | None = None
    last_state: RunnerStatus | None = None
    last_state_time: datetime | None = None
    creation_queued_time: datetime | None = None
    lifecycle: list[LifecycleEventRead] = []

    class Config:
        from_attributes = True


class KilledRunner(BaseModel):
    id: int
    hostname: str | None = None


class KillResponse(BaseModel):
    message: str
    killed_runners: list[KilledRunner]


class ProvisionFailure(BaseModel):
    reason: str = ""
