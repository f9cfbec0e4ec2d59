from autoscaler.schemas.job import JobRead
from autoscaler.schemas.runner import (
    KilledRunner,
    KillResponse,
    LifecycleEventRead,
    ProvisionFailure,
    RunnerRead,
)
from autoscaler.schemas.stats import PoolStatsRead

__all__ = [
    "JobRead",
    "KilledRunner",
    "KillResponse",
    "LifecycleEventRead",
    "ProvisionFailure",
    "RunnerRead",
    "PoolStatsRead",
]
