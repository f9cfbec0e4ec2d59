"""
Substrate registry, ban list and candidate selection.

The registry maps a cloud identifier to its controller. The ban list is the
create-path circuit breaker: after a failed create, the (cloud, size) pair is
skipped until its cooldown expires. Bans live in memory only.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from autoscaler.config import AutoScalerConfig, MachineType
from autoscaler.errors import ConfigurationError
from autoscaler.services.cloud.base import CloudController

logger = logging.getLogger(__name__)

BAN_COOLDOWN = timedelta(minutes=10)


class CloudRegistry:
    """Lookup of CloudController implementations by cloud identifier."""

    def __init__(self, controllers: list[CloudController] | None = None):
        self._controllers: dict[str, CloudController] = {}
        for controller in controllers or []:
            self.register(controller)

    def register(self, controller: CloudController) -> None:
        cloud = controller.cloud_identifier
        if cloud in self._controllers:
            raise ConfigurationError(f"Cloud controller {cloud!r} registered twice")
        self._controllers[cloud] = controller
        logger.info(f"Registered cloud controller {cloud!r}")

    def get(self, cloud: str | None) -> CloudController | None:
        if cloud is None:
            return None
        return self._controllers.get(cloud)

    def all(self) -> list[CloudController]:
        return list(self._controllers.values())

    def __contains__(self, cloud: str) -> bool:
        return cloud in self._controllers

    def __len__(self) -> int:
        return len(self._controllers)


@dataclass
class CloudBan:
    cloud: str
    size: str
    until: datetime
    reason: str = ""


class CloudBanList:
    """Temporary exclusions of (cloud, size) pairs from create selection."""

    def __init__(self, cooldown: timedelta = BAN_COOLDOWN):
        self._cooldown = cooldown
        self._bans: dict[tuple[str, str], CloudBan] = {}

    def ban(self, cloud: str, size: str, reason: str = "", now: datetime | None = None) -> CloudBan:
        now = now or datetime.utcnow()
        ban = CloudBan(cloud=cloud, size=size, until=now + self._cooldown, reason=reason)
        self._bans[(cloud, size)] = ban
        logger.warning(f"Banned cloud {cloud!r} for size {size!r} until {ban.until.isoformat()}: {reason}")
        return ban

    def is_banned(self, cloud: str, size: str, now: datetime | None = None) -> bool:
        ban = self._bans.get((cloud, size))
        if ban is None:
            return False
        return ban.until > (now or datetime.utcnow())

    def expire(self, now: datetime | None = None) -> list[CloudBan]:
        """Drop bans whose cooldown elapsed and return them."""
        now = now or datetime.utcnow()
        expired = [ban for ban in self._bans.values() if ban.until <= now]
        for ban in expired:
            del self._bans[(ban.cloud, ban.size)]
            logger.info(f"Ban on cloud {ban.cloud!r} for size {ban.size!r} expired")
        return expired

    def active(self) -> list[CloudBan]:
        return list(self._bans.values())

    def clear(self) -> None:
        self._bans.clear()


def machine_types_for(config: AutoScalerConfig, size: str, arch: str) -> list[MachineType]:
    """
    Machine types able to serve size/arch, highest priority first.

    Raises:
        ConfigurationError: If the size/arch combination is not configured
    """
    machine_size = config.find_size(size, arch)
    if machine_size is None:
        raise ConfigurationError(f"Unknown arch and size combination [{arch}/{size}]")
    return sorted(machine_size.vm_types, key=lambda t: t.priority, reverse=True)


def select_candidates(
    config: AutoScalerConfig,
    registry: CloudRegistry,
    bans: CloudBanList,
    size: str,
    arch: str,
    now: datetime | None = None,
) -> list[tuple[CloudController, MachineType]]:
    """
    Ordered substrates that may create a runner of size/arch right now.

    Substrates without a registered controller or under a ban for size are
    filtered out. An empty result means "fail fast".
    """
    candidates = []
    seen = set()
    for machine_type in machine_types_for(config, size, arch):
        if machine_type.cloud in seen:
            continue
        controller = registry.get(machine_type.cloud)
        if controller is None:
            logger.debug(f"No controller registered for cloud {machine_type.cloud!r}, skipping")
            continue
        if bans.is_banned(machine_type.cloud, size, now):
            logger.info(f"Skipping banned cloud {machine_type.cloud!r} for size {size!r}")
            continue
        seen.add(machine_type.cloud)
        candidates.append((controller, machine_type))
    return candidates
