from autoscaler.services.cloud.base import CloudController, CspServer, Machine
from autoscaler.services.cloud.registry import (
    BAN_COOLDOWN,
    CloudBanList,
    CloudRegistry,
    machine_types_for,
    select_candidates,
)

__all__ = [
    "CloudController",
    "CspServer",
    "Machine",
    "BAN_COOLDOWN",
    "CloudBanList",
    "CloudRegistry",
    "machine_types_for",
    "select_candidates",
]
