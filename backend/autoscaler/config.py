"""
Configuration for the runner autoscaler.

Two layers:
- Settings: process-level knobs read once from environment variables.
- AutoScalerConfig: the fleet definition (targets, pools, sizes, profiles),
  loaded from a JSON file and handed out as an immutable snapshot.
"""

import json
import logging
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from autoscaler.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    app_name: str = "Runner Autoscaler"
    database_url: str = "sqlite+aiosqlite:///./autoscaler.db"
    config_path: str = "./config.json"
    github_api_url: str = "https://api.github.com"
    controller_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Control loop cadence (seconds)
    tick_interval: float = 0.25
    refresh_interval: float = 10.0
    cull_interval: float = 60.0

    # Task execution
    create_parallelism: int = 4
    delete_parallelism: int = 8
    create_spacing: float = 1.0  # minimum gap between create task starts
    delete_spacing: float = 0.1


@lru_cache
def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv("AUTOSCALER_DATABASE_URL", "sqlite+aiosqlite:///./autoscaler.db"),
        config_path=os.getenv("AUTOSCALER_CONFIG_PATH", "./config.json"),
        github_api_url=os.getenv("AUTOSCALER_GITHUB_API_URL", "https://api.github.com"),
        controller_url=os.getenv("AUTOSCALER_CONTROLLER_URL", "http://localhost:8000"),
        log_level=os.getenv("AUTOSCALER_LOG_LEVEL", "INFO"),
        api_host=os.getenv("AUTOSCALER_API_HOST", "0.0.0.0"),
        api_port=int(os.getenv("AUTOSCALER_API_PORT", "8000")),
        create_parallelism=int(os.getenv("AUTOSCALER_CREATE_PARALLELISM", "4")),
        create_spacing=float(os.getenv("AUTOSCALER_CREATE_SPACING", "1.0")),
    )


# === Fleet configuration ===


class TargetType(str, Enum):
    ORG = "org"
    REPO = "repo"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class PoolConfig(_Frozen):
    size: str
    num_runners: int = 0
    profile: str = "default"


class TargetConfig(_Frozen):
    """A GitHub organization or repository that receives runners.

    For repo targets ``name`` is the full ``owner/repo`` name.
    """
    name: str
    github_token: str | None = None
    target: TargetType = TargetType.ORG
    pools: tuple[PoolConfig, ...] = ()
    runner_quota: int | None = None  # None = unlimited


class MachineType(_Frozen):
    cloud: str
    vm_type: str
    priority: int = 0


class MachineSize(_Frozen):
    name: str
    arch: str = "x64"
    vm_types: tuple[MachineType, ...] = ()


class RunnerProfile(_Frozen):
    name: str
    script_name: str = "default"
    script_version: int = 1
    os_image_name: str = "ubuntu-24.04"
    is_custom_image: bool = False
    use_private_networks: bool = False


class DockerSubstrateConfig(_Frozen):
    enabled: bool = False
    cloud_identifier: str = "docker"
    docker_host: str | None = None
    network: str | None = None


class AutoScalerConfig(_Frozen):
    targets: tuple[TargetConfig, ...] = ()
    sizes: tuple[MachineSize, ...] = ()
    profiles: tuple[RunnerProfile, ...] = (RunnerProfile(name="default"),)
    runner_prefix: str = "gh"
    default_size: str = "size-xs"
    provision_script_base_url: str = ""
    github_agent_version: str = "2.321.0"
    docker: DockerSubstrateConfig = Field(default_factory=DockerSubstrateConfig)

    def find_target(self, owner: str, repository: str | None = None) -> TargetConfig | None:
        """Resolve the target that should receive runners for owner/repository.

        Repo targets win over an org target for the same owner.
        """
        if repository:
            for target in self.targets:
                if target.target == TargetType.REPO and target.name == repository:
                    return target
        for target in self.targets:
            if target.target == TargetType.ORG and target.name == owner:
                return target
        return None

    def target_by_name(self, name: str) -> TargetConfig | None:
        return next((t for t in self.targets if t.name == name), None)

    def find_size(self, name: str, arch: str | None = None) -> MachineSize | None:
        for size in self.sizes:
            if size.name == name and (arch is None or size.arch == arch):
                return size
        return None

    def find_profile(self, name: str) -> RunnerProfile | None:
        return next((p for p in self.profiles if p.name == name), None)


def _resolve_env_refs(value: Any) -> Any:
    """Replace ``env:NAME`` strings with the value of environment variable NAME."""
    if isinstance(value, str):
        if value.lower().startswith("env:"):
            return os.environ.get(value[4:])
        return value
    if isinstance(value, list):
        return [_resolve_env_refs(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_env_refs(v) for k, v in value.items()}
    return value


def parse_config(raw: dict) -> AutoScalerConfig:
    """Build an AutoScalerConfig from already-decoded JSON."""
    try:
        return AutoScalerConfig.model_validate(_resolve_env_refs(raw))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid autoscaler configuration: {e}") from e


def load_config(path: str | Path) -> AutoScalerConfig:
    """Read and validate the fleet configuration file."""
    path = Path(path)
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found at {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e
    return parse_config(raw)


class ConfigProvider:
    """
    Hands out immutable configuration snapshots.

    The file is re-read only when its mtime changes. A broken edit keeps the
    previous snapshot in service and logs the error.
    """

    def __init__(self, path: str | Path | None = None, initial: AutoScalerConfig | None = None):
        self._path = Path(path) if path else None
        self._current = initial
        self._mtime: float | None = None

    @property
    def current(self) -> AutoScalerConfig:
        if self._current is None:
            return self.snapshot()
        return self._current

    def snapshot(self) -> AutoScalerConfig:
        """Return the latest configuration, reloading the file if it changed."""
        if self._path is None:
            if self._current is None:
                self._current = AutoScalerConfig()
            return self._current

        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            if self._current is None:
                raise ConfigurationError(f"Config file not found at {self._path}")
            logger.error(f"Config file {self._path} disappeared, keeping previous configuration")
            return self._current

        if self._current is not None and mtime == self._mtime:
            return self._current

        try:
            config = load_config(self._path)
        except ConfigurationError as e:
            if self._current is None:
                raise
            logger.error(f"Config reload failed, keeping previous configuration: {e}")
            return self._current

        if self._current is not None:
            logger.info(f"Reloaded configuration from {self._path}")
        self._current = config
        self._mtime = mtime
        return config
