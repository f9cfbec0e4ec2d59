"""
Error reporting collaborator.

Sub-passes of the control loop hand unexpected exceptions to an
ErrorReporter instead of letting them abort the tick. The default
implementation only logs; a deployment can subclass it to forward errors
to an external tracker.
"""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ErrorReporter:
    def __init__(self):
        self.reported: int = 0

    def capture_exception(self, exc: BaseException, context: Optional[dict[str, Any]] = None) -> None:
        self.reported += 1
        where = ", ".join(f"{k}={v}" for k, v in (context or {}).items())
        logger.error(f"Unhandled {type(exc).__name__} ({where}): {exc}", exc_info=exc)


_error_reporter: Optional[ErrorReporter] = None


def get_error_reporter() -> ErrorReporter:
    global _error_reporter
    if _error_reporter is None:
        _error_reporter = ErrorReporter()
    return _error_reporter
