"""
Fake collaborators for testing the control loop without real infrastructure.

FakeCloudController stands in for a compute substrate and FakeGitHubClient
for the GitHub REST API. Both record every call so tests can assert on them.
"""
import sys
from datetime import datetime
from pathlib import Path

backend_path = Path(__file__).parent.parent.parent / "backend"
sys.path.insert(0, str(backend_path))

from autoscaler.config import TargetConfig
from autoscaler.errors import CloudControllerError
from autoscaler.services.cloud.base import CloudController, CspServer, Machine
from autoscaler.services.github import GitHubJobInfo, GitHubRunner


# =============================================================================
# Fake substrate
# =============================================================================


class FakeCloudController(CloudController):
    """In-memory substrate.

    Set ``fail_with`` to an exception to make every create fail, or
    ``fail_times`` to fail only the next N creates.
    """

    def __init__(self, cloud: str = "fake"):
        self._cloud = cloud
        self.servers: dict[str, CspServer] = {}
        self.create_calls: list[dict] = []
        self.deleted: list[str] = []
        self.fail_with: Exception | None = None
        self.fail_times: int = 0
        self.fail_deletes_with: Exception | None = None
        self.list_fails: bool = False
        self._counter = 0

    @property
    def cloud_identifier(self) -> str:
        return self._cloud

    def add_server(self, name: str, created_at: datetime, server_id: str | None = None) -> CspServer:
        """Put a machine on the substrate directly, bypassing create_runner."""
        self._counter += 1
        server = CspServer(
            id=server_id or f"{self._cloud}-{self._counter}",
            name=name,
            created_at=created_at,
            cloud=self._cloud,
        )
        self.servers[server.id] = server
        return server

    async def create_runner(
        self,
        arch: str,
        size: str,
        runner_token: str,
        target_name: str,
        is_custom: bool = False,
        profile_name: str = "default",
    ) -> Machine:
        self.create_calls.append({
            "arch": arch,
            "size": size,
            "runner_token": runner_token,
            "target_name": target_name,
            "is_custom": is_custom,
            "profile_name": profile_name,
        })
        if self.fail_times > 0:
            self.fail_times -= 1
            raise CloudControllerError(f"{self._cloud} is having a bad day", cloud=self._cloud)
        if self.fail_with is not None:
            raise self.fail_with

        server = self.add_server(f"gh-{self._cloud}-{self._counter + 1}", datetime.utcnow())
        return Machine(
            server_id=server.id,
            name=server.name,
            ipv4=f"10.0.0.{self._counter}",
            cloud=self._cloud,
            created_at=server.created_at,
            provision_id=f"prov-{server.id}",
            provision_payload=f"export GH_TOKEN='{runner_token}'\n",
        )

    async def delete_runner(self, server_id: str) -> None:
        if self.fail_deletes_with is not None:
            raise self.fail_deletes_with
        self.deleted.append(server_id)
        self.servers.pop(server_id, None)

    async def get_all_servers_from_csp(self) -> list[CspServer]:
        if self.list_fails:
            raise CloudControllerError(f"{self._cloud} inventory unavailable", cloud=self._cloud)
        return list(self.servers.values())


# =============================================================================
# Fake GitHub
# =============================================================================


class FakeGitHubClient:
    """Scriptable stand-in for GitHubClient."""

    def __init__(self):
        self.runners: dict[str, list[GitHubRunner]] = {}
        self.jobs: dict[int, GitHubJobInfo] = {}
        self.token: str | None = "reg-token"
        self.available = True
        self.removed: list[tuple[str, int]] = []
        self.job_lookups: list[int] = []
        self._next_id = 1000

    def register(self, target: str, name: str, online: bool = True, busy: bool = False) -> GitHubRunner:
        self._next_id += 1
        runner = GitHubRunner(
            id=self._next_id,
            name=name,
            status="online" if online else "offline",
            busy=busy,
        )
        self.runners.setdefault(target, []).append(runner)
        return runner

    def set_job(self, job_id: int, status: str) -> None:
        self.jobs[job_id] = GitHubJobInfo(id=job_id, status=status)

    async def get_runners_for(self, target: TargetConfig) -> list[GitHubRunner] | None:
        if not self.available:
            return None
        return list(self.runners.get(target.name, []))

    async def get_registration_token(self, target: TargetConfig) -> str | None:
        if not self.available:
            return None
        return self.token

    async def remove_runner_from(self, target: TargetConfig, runner_id: int) -> bool:
        if not self.available:
            return False
        self.removed.append((target.name, runner_id))
        self.runners[target.name] = [r for r in self.runners.get(target.name, []) if r.id != runner_id]
        return True

    async def get_job_info(self, job_id: int, repo: str, token: str | None) -> GitHubJobInfo | None:
        self.job_lookups.append(job_id)
        if not self.available:
            return None
        return self.jobs.get(job_id)

    async def aclose(self) -> None:
        pass
