"""
GitHub Actions REST client.

Only the handful of endpoints the control loop needs. Every call is best
effort: transport and HTTP errors are logged and mapped to None/False so a
GitHub outage skips one reconciliation pass instead of breaking the loop.
"""

import logging
from datetime import datetime
from typing import Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from autoscaler.config import TargetConfig, TargetType, get_settings

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
PAGE_SIZE = 100
JOB_NOT_FOUND = "not_found"


class GitHubRunnerLabel(BaseModel):
    id: Optional[int] = None
    name: str
    type: Optional[str] = None


class GitHubRunner(BaseModel):
    id: int
    name: str
    os: Optional[str] = None
    status: str = "offline"
    busy: bool = False
    labels: list[GitHubRunnerLabel] = Field(default_factory=list)

    @property
    def is_online(self) -> bool:
        return self.status == "online"


class GitHubJobInfo(BaseModel):
    """Subset of a workflow job as returned by ``GET /repos/{repo}/actions/jobs/{id}``."""
    id: Optional[int] = None
    name: Optional[str] = None
    status: str
    conclusion: Optional[str] = None
    runner_name: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def runners_path(target: TargetConfig) -> str:
    if target.target == TargetType.REPO:
        return f"/repos/{target.name}/actions/runners"
    return f"/orgs/{target.name}/actions/runners"


class GitHubClient:
    """
    Thin async wrapper around the GitHub REST API.

    Usage:
        github = GitHubClient()
        runners = await github.get_runners_for(target)  # None on failure
        await github.aclose()
    """

    def __init__(
        self,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 15.0,
    ):
        self._base_url = (base_url or get_settings().github_api_url).rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                transport=self._transport,
                timeout=self._timeout,
                headers={
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": API_VERSION,
                    "User-Agent": "runner-autoscaler/1",
                },
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _auth(token: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def get_runners_for(self, target: TargetConfig) -> list[GitHubRunner] | None:
        """All self-hosted runners registered for target, following pagination."""
        client = self._get_client()
        runners: list[GitHubRunner] = []
        page = 1
        try:
            while True:
                response = await client.get(
                    runners_path(target),
                    params={"per_page": PAGE_SIZE, "page": page},
                    headers=self._auth(target.github_token),
                )
                response.raise_for_status()
                data = response.json()
                batch = [GitHubRunner.model_validate(r) for r in data.get("runners", [])]
                runners.extend(batch)
                if not batch or len(runners) >= data.get("total_count", 0):
                    return runners
                page += 1
        except (httpx.HTTPError, ValidationError, ValueError) as e:
            logger.error(f"Failed to fetch runners for {target.name}: {e}")
            return None

    async def get_registration_token(self, target: TargetConfig) -> str | None:
        """Short-lived token a new machine uses to register itself."""
        try:
            response = await self._get_client().post(
                f"{runners_path(target)}/registration-token",
                headers=self._auth(target.github_token),
            )
            response.raise_for_status()
            return response.json().get("token")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to get registration token for {target.name}: {e}")
            return None

    async def remove_runner_from(self, target: TargetConfig, runner_id: int) -> bool:
        """Deregister a runner. An already-removed runner counts as success."""
        try:
            response = await self._get_client().delete(
                f"{runners_path(target)}/{runner_id}",
                headers=self._auth(target.github_token),
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to remove runner {runner_id} from {target.name}: {e}")
            return False
        if response.status_code == 404:
            return True
        if response.is_error:
            logger.error(f"Failed to remove runner {runner_id} from {target.name}: HTTP {response.status_code}")
            return False
        return True

    async def get_job_info(self, job_id: int, repo: str, token: str | None) -> GitHubJobInfo | None:
        """
        Look up a workflow job.

        Returns:
            The job, a GitHubJobInfo with status "not_found" if GitHub says 404,
            or None if GitHub couldn't be asked
        """
        try:
            response = await self._get_client().get(
                f"/repos/{repo}/actions/jobs/{job_id}",
                headers=self._auth(token),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch job {job_id} of {repo}: {e}")
            return None
        if response.status_code == 404:
            return GitHubJobInfo(id=job_id, status=JOB_NOT_FOUND)
        if response.is_error:
            logger.warning(f"Failed to fetch job {job_id} of {repo}: HTTP {response.status_code}")
            return None
        try:
            return GitHubJobInfo.model_validate(response.json())
        except (ValidationError, ValueError) as e:
            logger.warning(f"Unexpected job payload for {job_id} of {repo}: {e}")
            return None
