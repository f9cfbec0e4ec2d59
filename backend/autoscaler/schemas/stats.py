from datetime import datetime
from pydantic import BaseModel


class PoolStatsRead(BaseModel):
    collected_at: datetime
    runners_by_state: dict[str, int] = {}
    jobs_by_state: dict[str, int] = {}
    queued_creates: int = 0
    queued_deletes: int = 0
    in_flight: int = 0
    servers_by_cloud: dict[str, int] = {}
    banned: list[str] = []

    class Config:
        from_attributes = True
