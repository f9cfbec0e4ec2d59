# Test data factories for creating model instances

from .base import BaseFactory, ago, fetch, generate_hostname, persist
from .models import JobFactory, RunnerFactory

__all__ = [
    # Base utilities
    "BaseFactory",
    "ago",
    "fetch",
    "generate_hostname",
    "persist",
    # Model factories
    "JobFactory",
    "RunnerFactory",
]
