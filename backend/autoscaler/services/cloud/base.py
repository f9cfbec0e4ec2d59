"""
Cloud controller contract.

Each compute substrate (VM cloud, virtualization host, local Docker) provides
one independent CloudController implementation. The control loop only ever
talks to substrates through this interface and treats every call as an
opaque operation that may fail on its own.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Machine:
    """What a substrate hands back after creating a runner."""
    server_id: str
    name: str
    ipv4: str | None = None
    cloud: str | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    provision_id: str | None = None
    provision_payload: str | None = None


@dataclass
class CspServer:
    """Inventory entry as reported by the substrate."""
    id: str
    name: str
    created_at: datetime
    cloud: str | None = None
    status: str | None = None


class CloudController(ABC):
    """Interface every compute substrate implements."""

    @property
    @abstractmethod
    def cloud_identifier(self) -> str:
        """Stable short id, stored as Runner.cloud and used for ban keys."""

    @abstractmethod
    async def create_runner(
        self,
        arch: str,
        size: str,
        runner_token: str,
        target_name: str,
        is_custom: bool = False,
        profile_name: str = "default",
    ) -> Machine:
        """
        Create a machine that registers itself as a runner for target_name.

        Raises:
            ImageNotFoundError: The profile's image is missing on this substrate
            UnsupportedMachineTypeError: No machine type for size/arch here
            CloudControllerError: Any other substrate failure
        """

    @abstractmethod
    async def delete_runner(self, server_id: str) -> None:
        """Destroy a machine. Deleting an already-gone machine is not an error."""

    @abstractmethod
    async def get_all_servers_from_csp(self) -> list[CspServer]:
        """All machines on this substrate that carry the runner name prefix."""

    async def get_server_count_from_csp(self) -> int:
        return len(await self.get_all_servers_from_csp())
