"""Unit tests for billable duration rounding and interval state."""
from datetime import datetime, timedelta

import pytest

from metered_billing.exceptions import ConflictError, ValidationError
from metered_billing.models.usage_interval import UsageInterval, billable_minutes

START = datetime(2024, 1, 15, 9, 0, 0)


@pytest.mark.parametrize(
    "elapsed,minutes",
    [
        (timedelta(seconds=0), 0),
        (timedelta(seconds=1), 1),
        (timedelta(seconds=59), 1),
        (timedelta(seconds=60), 1),
        (timedelta(seconds=60, microseconds=1), 2),
        (timedelta(seconds=90), 2),
        (timedelta(seconds=125), 3),
        (timedelta(seconds=3600), 60),
        (timedelta(hours=5, seconds=1), 301),
    ],
)
def test_partial_minutes_round_up(elapsed: timedelta, minutes: int) -> None:
    """Test that any partial minute is billed as a whole minute."""
    assert billable_minutes(START, START + elapsed) == minutes


def test_end_before_start_is_rejected() -> None:
    """Test that a negative duration is a validation error."""
    with pytest.raises(ValidationError):
        billable_minutes(START, START - timedelta(seconds=1))


def test_close_sets_duration_once() -> None:
    """Test that an interval closes exactly once."""
    interval = UsageInterval(start_time=START, activity_type=1, paid=False)
    assert interval.is_open

    interval.close(START + timedelta(seconds=125))

    assert not interval.is_open
    assert interval.duration_minutes == 3
    with pytest.raises(ConflictError):
        interval.close(START + timedelta(minutes=10))
    assert interval.duration_minutes == 3
