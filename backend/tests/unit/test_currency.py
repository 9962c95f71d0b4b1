"""Unit tests for settlement amount calculation and formatting."""
from decimal import Decimal

import pytest

from metered_billing.utils.currency import (
    convert_to_smallest_unit,
    format_amount_for_currency,
    get_currency_decimal_places,
    usage_amount,
)


def test_three_minutes_at_ten_cents() -> None:
    """Test the reference example: 3 minutes at 0.10 per minute is 30 cents."""
    assert usage_amount(3, Decimal("0.10"), "usd") == 30


@pytest.mark.parametrize(
    "minutes,rate,expected",
    [
        (0, Decimal("0.10"), 0),
        (1, Decimal("0.10"), 10),
        (60, Decimal("0.10"), 600),
        (7, Decimal("0.0125"), 9),
    ],
)
def test_usage_amount(minutes: int, rate: Decimal, expected: int) -> None:
    """Test amounts across rates."""
    assert usage_amount(minutes, rate, "usd") == expected


def test_half_cent_rounds_up() -> None:
    """Test that half of the smallest unit rounds away from zero."""
    assert convert_to_smallest_unit(Decimal("0.125"), "usd") == 13
    assert usage_amount(2, Decimal("0.0125"), "usd") == 3


def test_zero_decimal_currency() -> None:
    """Test that zero-decimal currencies are not scaled."""
    assert get_currency_decimal_places("jpy") == 0
    assert usage_amount(3, Decimal("10"), "JPY") == 30


def test_format_amount() -> None:
    """Test human-readable formatting."""
    assert format_amount_for_currency(30, "usd") == "$0.30 USD"
    assert format_amount_for_currency(123456, "EUR") == "€1,234.56 EUR"
    assert format_amount_for_currency(1000, "JPY") == "¥1,000 JPY"
