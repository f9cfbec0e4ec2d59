"""
Fleet configuration used across the test suite.

Two substrates are configured: cloud-a is preferred for size-s/x64 and
cloud-b is the fallback. size-s/arm64 only exists on cloud-b.
"""
import sys
from pathlib import Path

backend_path = Path(__file__).parent.parent.parent / "backend"
sys.path.insert(0, str(backend_path))

from autoscaler.config import AutoScalerConfig, parse_config

FLEET_CONFIG = {
    "runner_prefix": "gh",
    "default_size": "size-xs",
    "provision_script_base_url": "https://provision.example.com",
    "targets": [
        {
            "name": "acme",
            "github_token": "ghp_acme",
            "target": "org",
            "pools": [],
        },
        {
            "name": "acme/special",
            "github_token": "ghp_special",
            "target": "repo",
        },
    ],
    "sizes": [
        {
            "name": "size-xs",
            "arch": "x64",
            "vm_types": [{"cloud": "cloud-a", "vm_type": "1c2g", "priority": 10}],
        },
        {
            "name": "size-s",
            "arch": "x64",
            "vm_types": [
                {"cloud": "cloud-a", "vm_type": "2c4g", "priority": 10},
                {"cloud": "cloud-b", "vm_type": "2c4g", "priority": 5},
            ],
        },
        {
            "name": "size-s",
            "arch": "arm64",
            "vm_types": [{"cloud": "cloud-b", "vm_type": "2c4g", "priority": 1}],
        },
    ],
    "profiles": [
        {"name": "default"},
        {"name": "gpu", "os_image_name": "ubuntu-gpu", "is_custom_image": True},
    ],
}


def make_config(**overrides) -> AutoScalerConfig:
    """Build an AutoScalerConfig from FLEET_CONFIG with top-level overrides."""
    return parse_config({**FLEET_CONFIG, **overrides})


def acme_target(**overrides) -> dict:
    """The acme org target as a dict, for use in ``make_config(targets=[...])``."""
    return {**FLEET_CONFIG["targets"][0], **overrides}
