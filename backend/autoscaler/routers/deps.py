from autoscaler.services.context import FleetContext
from autoscaler.services.pool_manager import PoolManager, get_pool_manager


def get_manager() -> PoolManager:
    return get_pool_manager()


def get_context() -> FleetContext:
    return get_pool_manager().ctx
