"""
Provisioning payloads and runner naming shared by all substrates.

A created machine bootstraps itself from an environment block plus a
provision script fetched from ``provision_script_base_url``. Substrates that
accept user data get it as cloud-init, substrates that don't pull the shell
form through ``GET /api/provision/{provision_id}``.
"""

import secrets
from typing import Awaitable, Callable

from autoscaler.config import AutoScalerConfig, RunnerProfile, get_settings

ADJECTIVES = (
    "amber", "brisk", "calm", "dusty", "eager", "fuzzy", "gentle", "hollow",
    "icy", "jolly", "keen", "lucky", "mellow", "nimble", "odd", "proud",
    "quiet", "rapid", "sunny", "tidy", "upbeat", "vivid", "witty", "zesty",
)
NOUNS = (
    "badger", "comet", "delta", "ember", "falcon", "glacier", "harbor", "island",
    "jaguar", "kestrel", "lantern", "meadow", "nebula", "otter", "pebble", "quarry",
    "raven", "summit", "thicket", "urchin", "valley", "walrus", "yonder", "zephyr",
)

MAX_NAME_ATTEMPTS = 20


def random_name(prefix: str) -> str:
    """``<prefix>-<adjective>-<noun>-<hex>``, lowercase and DNS safe."""
    adjective = secrets.choice(ADJECTIVES)
    noun = secrets.choice(NOUNS)
    return f"{prefix}-{adjective}-{noun}-{secrets.token_hex(2)}".lower()


async def generate_name(prefix: str, is_taken: Callable[[str], Awaitable[bool]]) -> str:
    """
    Generate a runner hostname that is not in use yet.

    Args:
        prefix: Runner name prefix, used to recognise our machines on a substrate
        is_taken: Async predicate telling whether a name already exists

    Raises:
        RuntimeError: If no free name was found after MAX_NAME_ATTEMPTS tries
    """
    for _ in range(MAX_NAME_ATTEMPTS):
        name = random_name(prefix)
        if not await is_taken(name):
            return name
    raise RuntimeError(f"Could not find a free runner name with prefix {prefix!r}")


def _env_lines(
    config: AutoScalerConfig,
    target_name: str,
    runner_token: str,
    size: str,
    profile: RunnerProfile,
    is_custom: bool,
) -> list[str]:
    return [
        f"export GH_VERSION='{config.github_agent_version}'",
        f"export ORG_NAME='{target_name}'",
        f"export GH_TOKEN='{runner_token}'",
        f"export RUNNER_SIZE='{size}'",
        f"export GH_PROFILE_NAME='{profile.name}'",
        f"export GH_IS_CUSTOM='{1 if is_custom else 0}'",
        f"export RUNNER_PREFIX='{config.runner_prefix}'",
        f"export CONTROLLER_URL='{get_settings().controller_url}'",
    ]


def provision_script_url(config: AutoScalerConfig, profile: RunnerProfile, arch: str) -> str:
    base = config.provision_script_base_url.rstrip("/")
    return f"{base}/provision.{profile.script_name}.{arch}.v{profile.script_version}.sh"


def generate_cloud_init(
    config: AutoScalerConfig,
    target_name: str,
    runner_token: str,
    size: str,
    profile: RunnerProfile,
    is_custom: bool,
    arch: str,
) -> str:
    """cloud-config user data that writes the env file and runs the provision script."""
    lines = [
        "#cloud-config",
        "write_files:",
        "  - path: /data/config.env",
        "    content: |",
    ]
    lines += [f"      {line}" for line in _env_lines(config, target_name, runner_token, size, profile, is_custom)]
    lines += [
        "runcmd:",
        f"  - [ sh, -xc, 'curl -fsSL {provision_script_url(config, profile, arch)} -o /data/provision.sh']",
        "  - [ sh, -xc, 'bash /data/provision.sh']",
    ]
    return "\n".join(lines) + "\n"


def generate_provision_script(
    config: AutoScalerConfig,
    target_name: str,
    runner_token: str,
    size: str,
    profile: RunnerProfile,
    is_custom: bool,
    arch: str,
) -> str:
    """Plain shell form of the bootstrap, served to machines that pull it."""
    lines = _env_lines(config, target_name, runner_token, size, profile, is_custom)
    lines += [
        f"curl -fsSL {provision_script_url(config, profile, arch)} -o /data/provision.sh",
        "bash /data/provision.sh",
    ]
    return "\n".join(lines) + "\n"
