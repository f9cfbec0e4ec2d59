"""
Custom assertion helpers for API testing.

These helpers provide cleaner, more expressive assertions for common
patterns in API tests.
"""
from typing import Any

from httpx import Response


def assert_status_code(response: Response, expected: int) -> None:
    """Assert response has expected status code with helpful error message."""
    assert response.status_code == expected, (
        f"Expected status {expected}, got {response.status_code}. "
        f"Response body: {response.text}"
    )


def assert_json_contains(response: Response, expected: dict[str, Any] = None, **kwargs) -> None:
    """Assert response JSON contains all expected key-value pairs.

    Can be called as:
        assert_json_contains(response, {"name": "value"})
        assert_json_contains(response, name="value")
    """
    if expected is None:
        expected = kwargs
    else:
        expected = {**expected, **kwargs}

    actual = response.json()
    for key, value in expected.items():
        assert key in actual, f"Expected key '{key}' not found in response: {actual}"
        assert actual[key] == value, (
            f"Expected {key}={value!r}, got {key}={actual[key]!r}"
        )


def assert_json_list_length(response: Response, expected_length: int) -> None:
    """Assert response JSON is a list of expected length."""
    actual = response.json()
    assert isinstance(actual, list), f"Expected list, got {type(actual)}"
    assert len(actual) == expected_length, (
        f"Expected {expected_length} items, got {len(actual)}"
    )


def assert_not_found(response: Response, detail: str | None = None) -> None:
    """Assert response is a 404 Not Found, optionally with a specific detail."""
    assert_status_code(response, 404)
    if detail is not None:
        assert response.json().get("detail") == detail, (
            f"Expected detail {detail!r}, got {response.json().get('detail')!r}"
        )
