# Cross-cutting test utilities shared across all test types

from .fleet import FLEET_CONFIG, acme_target, make_config
from .mocks import FakeCloudController, FakeGitHubClient

__all__ = [
    "FLEET_CONFIG",
    "acme_target",
    "make_config",
    "FakeCloudController",
    "FakeGitHubClient",
]
