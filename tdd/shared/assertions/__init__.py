# Custom assertion helpers

from .api import (
    assert_json_contains,
    assert_json_list_length,
    assert_not_found,
    assert_status_code,
)
from .models import (
    assert_event_sequence,
    assert_last_state,
    assert_model_fields,
)

__all__ = [
    # API assertions
    "assert_status_code",
    "assert_json_contains",
    "assert_json_list_length",
    "assert_not_found",
    # Model assertions
    "assert_model_fields",
    "assert_last_state",
    "assert_event_sequence",
]
