"""
Docker substrate: runners as containers on a Docker host.

Reference CloudController implementation. A machine type string encodes the
container limits, e.g. ``2c4g`` = 2 CPUs and 4 GiB memory. The profile's
``os_image_name`` is the container image. Docker SDK calls are blocking, so
every one of them runs in the default executor.
"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Awaitable, Callable, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from autoscaler.config import ConfigProvider
from autoscaler.errors import CloudControllerError, ImageNotFoundError, UnsupportedMachineTypeError
from autoscaler.services.cloud.base import CloudController, CspServer, Machine
from autoscaler.services.cloud.provisioning import generate_name, generate_provision_script
from autoscaler.services.cloud.registry import machine_types_for

logger = logging.getLogger(__name__)

MANAGED_LABEL = "autoscaler.managed"
VM_TYPE_PATTERN = re.compile(r"^(?P<cpus>\d+(?:\.\d+)?)c(?P<mem>\d+)g$", re.IGNORECASE)


def parse_vm_type(vm_type: str) -> tuple[float, int]:
    """
    Parse ``<cpus>c<gib>g`` into (cpus, memory in bytes).

    Raises:
        UnsupportedMachineTypeError: If vm_type doesn't follow the pattern
    """
    match = VM_TYPE_PATTERN.match(vm_type.strip())
    if not match:
        raise UnsupportedMachineTypeError(f"Docker can't run machine type {vm_type!r}", cloud="docker")
    return float(match.group("cpus")), int(match.group("mem")) * 1024 ** 3


def _parse_created(value: str | None) -> datetime:
    # Docker reports RFC 3339 with nanoseconds, seconds precision is enough here
    if not value:
        return datetime.utcnow()
    return datetime.fromisoformat(value[:19])


class DockerCloudController(CloudController):
    """
    Creates runner containers through the Docker SDK.

    Usage:
        controller = DockerCloudController(config_provider)
        machine = await controller.create_runner("x64", "size-s", token, "acme")
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        docker_client=None,
        is_name_taken: Optional[Callable[[str], Awaitable[bool]]] = None,
    ):
        """
        Args:
            config_provider: Source of the current fleet configuration
            docker_client: Docker client (or mock for testing)
            is_name_taken: Extra name check, usually a ledger hostname lookup
        """
        self._config_provider = config_provider
        self._docker = docker_client
        self._is_name_taken = is_name_taken
        self._name_lock = asyncio.Lock()

    @property
    def cloud_identifier(self) -> str:
        return self._config_provider.current.docker.cloud_identifier

    def _get_docker_client(self):
        if self._docker is not None:
            return self._docker
        settings = self._config_provider.current.docker
        try:
            if settings.docker_host:
                self._docker = docker.DockerClient(base_url=settings.docker_host)
            else:
                self._docker = docker.from_env()
            return self._docker
        except DockerException as e:
            raise CloudControllerError(f"Failed to connect to Docker: {e}", cloud=self.cloud_identifier) from e

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _name_exists(self, name: str) -> bool:
        client = self._get_docker_client()
        containers = await self._run(lambda: client.containers.list(all=True, filters={"name": f"^/{name}$"}))
        if containers:
            return True
        if self._is_name_taken is not None:
            return await self._is_name_taken(name)
        return False

    async def create_runner(
        self,
        arch: str,
        size: str,
        runner_token: str,
        target_name: str,
        is_custom: bool = False,
        profile_name: str = "default",
    ) -> Machine:
        config = self._config_provider.current
        cloud = self.cloud_identifier

        machine_type = next(
            (t for t in machine_types_for(config, size, arch) if t.cloud == cloud),
            None,
        )
        if machine_type is None:
            raise UnsupportedMachineTypeError(f"No machine type for [{arch}/{size}] on {cloud}", cloud=cloud)
        cpus, memory = parse_vm_type(machine_type.vm_type)

        profile = config.find_profile(profile_name)
        if profile is None:
            raise ImageNotFoundError(f"Unknown runner profile {profile_name!r}", cloud=cloud)

        payload = generate_provision_script(config, target_name, runner_token, size, profile, is_custom, arch)
        client = self._get_docker_client()

        # Name allocation and container creation must not interleave
        async with self._name_lock:
            name = await generate_name(config.runner_prefix, self._name_exists)
            kwargs = {
                "image": profile.os_image_name,
                "name": name,
                "hostname": name,
                "detach": True,
                "environment": {
                    "GH_VERSION": config.github_agent_version,
                    "ORG_NAME": target_name,
                    "GH_TOKEN": runner_token,
                    "RUNNER_SIZE": size,
                    "GH_PROFILE_NAME": profile.name,
                    "GH_IS_CUSTOM": "1" if is_custom else "0",
                    "RUNNER_PREFIX": config.runner_prefix,
                },
                "labels": {
                    MANAGED_LABEL: "true",
                    "autoscaler.target": target_name,
                    "autoscaler.size": size,
                    "autoscaler.arch": arch,
                    "autoscaler.profile": profile.name,
                },
                "nano_cpus": int(cpus * 1_000_000_000),
                "mem_limit": memory,
            }
            if config.docker.network:
                kwargs["network"] = config.docker.network

            try:
                container = await self._run(lambda: client.containers.run(**kwargs))
            except ImageNotFound as e:
                raise ImageNotFoundError(f"Image {profile.os_image_name!r} not found: {e}", cloud=cloud) from e
            except DockerException as e:
                raise CloudControllerError(f"Failed to create container {name}: {e}", cloud=cloud) from e

        await self._run(container.reload)
        networks = (container.attrs.get("NetworkSettings") or {}).get("Networks") or {}
        ipv4 = next((n.get("IPAddress") for n in networks.values() if n.get("IPAddress")), None)

        logger.info(f"Created container {name} ({container.short_id}) for {target_name} [{arch}/{size}]")
        return Machine(
            server_id=container.id,
            name=name,
            ipv4=ipv4,
            cloud=cloud,
            created_at=_parse_created(container.attrs.get("Created")),
            provision_id=container.short_id,
            provision_payload=payload,
        )

    async def delete_runner(self, server_id: str) -> None:
        client = self._get_docker_client()
        try:
            container = await self._run(lambda: client.containers.get(server_id))
        except NotFound:
            logger.info(f"Container {server_id} is already gone")
            return
        except DockerException as e:
            raise CloudControllerError(f"Failed to look up container {server_id}: {e}", cloud=self.cloud_identifier) from e

        try:
            await self._run(lambda: container.remove(force=True))
        except NotFound:
            return
        except DockerException as e:
            raise CloudControllerError(f"Failed to remove container {server_id}: {e}", cloud=self.cloud_identifier) from e
        logger.info(f"Removed container {container.name} ({server_id[:12]})")

    async def get_all_servers_from_csp(self) -> list[CspServer]:
        client = self._get_docker_client()
        prefix = self._config_provider.current.runner_prefix
        try:
            containers = await self._run(
                lambda: client.containers.list(all=True, filters={"label": f"{MANAGED_LABEL}=true"})
            )
        except DockerException as e:
            raise CloudControllerError(f"Failed to list containers: {e}", cloud=self.cloud_identifier) from e

        return [
            CspServer(
                id=c.id,
                name=c.name,
                created_at=_parse_created(c.attrs.get("Created")),
                cloud=self.cloud_identifier,
                status=c.status,
            )
            for c in containers
            if c.name.startswith(prefix)
        ]
