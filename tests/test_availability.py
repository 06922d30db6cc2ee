import pytest

from creator_analytics.availability import (
    Availability,
    AvailabilityPolicy,
    check_handle_availability,
    normalize_handle,
    resolve,
)
from creator_analytics.errors import DataUnavailable, InvalidParameter


def _lookup(taken):
    def _exists(handle):
        return handle in taken

    return _exists


def _broken_lookup(handle):
    raise DataUnavailable("user store", "connection refused")


def test_normalize_handle():
    assert normalize_handle("  @Maya ") == "maya"
    assert normalize_handle("") == ""


def test_taken_and_available():
    assert check_handle_availability("@maya", _lookup({"maya"})) is Availability.TAKEN
    assert check_handle_availability("leo_b", _lookup({"maya"})) is Availability.AVAILABLE


def test_lookup_failure_is_unknown_not_available():
    assert check_handle_availability("maya", _broken_lookup) is Availability.UNKNOWN


def test_short_handles_are_invalid():
    with pytest.raises(InvalidParameter):
        check_handle_availability("@ab", _lookup(set()))


@pytest.mark.parametrize(
    "result, policy, expected",
    [
        (Availability.UNKNOWN, AvailabilityPolicy.OPTIMISTIC, True),
        (Availability.UNKNOWN, AvailabilityPolicy.PESSIMISTIC, False),
        (Availability.AVAILABLE, AvailabilityPolicy.PESSIMISTIC, True),
        (Availability.TAKEN, AvailabilityPolicy.OPTIMISTIC, False),
    ],
)
def test_policy_decides_unknown(result, policy, expected):
    assert resolve(result, policy) is expected
