"""
Custom assertion helpers for ledger and queue state.
"""
from typing import Any


def assert_model_fields(model: Any, expected: dict[str, Any]) -> None:
    """Assert model instance has expected field values."""
    for field, value in expected.items():
        actual = getattr(model, field, None)
        assert actual == value, (
            f"Expected {field}={value!r}, got {field}={actual!r}"
        )


def assert_last_state(runner: Any, expected) -> None:
    """Assert a runner's derived state, listing its lifecycle on failure."""
    assert runner.last_state == expected, (
        f"Expected runner {runner.id} in {expected}, got {runner.last_state}. "
        f"Lifecycle: {[(e.status, e.event) for e in runner.lifecycle]}"
    )


def assert_event_sequence(runner: Any, expected: list) -> None:
    """Assert the statuses of a runner's lifecycle in time order."""
    actual = [e.status for e in sorted(runner.lifecycle, key=lambda e: e.event_time)]
    expected = [getattr(s, "value", s) for s in expected]
    assert actual == expected, f"Expected lifecycle {expected}, got {actual}"
