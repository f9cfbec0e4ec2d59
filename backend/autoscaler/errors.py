"""
Exception hierarchy for the autoscaler.

Substrate errors are retried and feed the ban list, configuration errors are
fatal for the single task that hit them.
"""


class AutoscalerError(Exception):
    """Base class for autoscaler errors."""


class ConfigurationError(AutoscalerError):
    """Unknown size/arch, unknown target, missing token and similar."""


class CloudControllerError(AutoscalerError):
    """A compute substrate call failed."""

    def __init__(self, message: str, cloud: str | None = None):
        self.cloud = cloud
        super().__init__(message)


class ImageNotFoundError(CloudControllerError):
    """The OS image for the requested profile does not exist on the substrate."""


class UnsupportedMachineTypeError(CloudControllerError):
    """The substrate cannot provide the requested size/arch. Fatal for the create task, no ban."""


class InvalidLifecycleTransitionError(AutoscalerError):
    """Raised when an event cannot follow the runner's current state."""

    def __init__(self, runner_id: int | None, from_state, to_state):
        self.runner_id = runner_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid lifecycle transition for runner {runner_id}: "
            f"{getattr(from_state, 'value', from_state)} -> {getattr(to_state, 'value', to_state)}"
        )
