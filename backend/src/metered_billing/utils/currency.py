"""Amount calculation and formatting for usage settlement.

Settlement runs in a single configured currency; amounts are carried as
integers in the smallest currency unit (cents for USD).
"""
from decimal import ROUND_HALF_UP, Decimal

# Currencies that don't use decimal places (smallest unit is whole currency)
zero_decimal_currencies = [
    "JPY",  # Japanese Yen
    "KRW",  # South Korean Won
    "VND",  # Vietnamese Đồng
    "CLP",  # Chilean Peso
    "ISK",  # Icelandic Króna
    "TWD",  # Taiwan Dollar
]

# Currency symbols for common currencies
currency_symbols = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "CA$",
    "AUD": "A$",
}


def get_currency_decimal_places(currency: str) -> int:
    """
    Get the number of decimal places for a currency.

    Example:
        >>> get_currency_decimal_places("USD")
        2
        >>> get_currency_decimal_places("JPY")
        0
    """
    if currency.upper() in zero_decimal_currencies:
        return 0
    return 2


def convert_to_smallest_unit(amount: Decimal, currency: str) -> int:
    """
    Convert a decimal amount to the smallest currency unit.

    Fractions of the smallest unit round half up.

    Examples:
        >>> convert_to_smallest_unit(Decimal("0.30"), "USD")
        30
        >>> convert_to_smallest_unit(Decimal("0.125"), "USD")
        13
        >>> convert_to_smallest_unit(Decimal("1000"), "JPY")
        1000
    """
    scale = Decimal(10) ** get_currency_decimal_places(currency)
    return int((Decimal(amount) * scale).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def usage_amount(minutes: int, rate_per_minute: Decimal, currency: str) -> int:
    """
    Amount owed for billable minutes at a per-minute rate.

    Args:
        minutes: Total billable minutes
        rate_per_minute: Charge per minute in currency units
        currency: ISO 4217 currency code

    Returns:
        Amount in smallest currency unit

    Example:
        >>> usage_amount(3, Decimal("0.10"), "usd")
        30
    """
    return convert_to_smallest_unit(Decimal(minutes) * Decimal(rate_per_minute), currency)


def format_amount_for_currency(amount: int, currency: str) -> str:
    """
    Format an amount in the smallest unit to a human-readable string.

    Examples:
        >>> format_amount_for_currency(30, "usd")
        '$0.30 USD'
        >>> format_amount_for_currency(1000, "JPY")
        '¥1,000 JPY'
    """
    currency_upper = currency.upper()
    symbol = currency_symbols.get(currency_upper, currency_upper)

    places = get_currency_decimal_places(currency_upper)
    if places == 0:
        return f"{symbol}{amount:,} {currency_upper}"
    major = Decimal(amount) / (Decimal(10) ** places)
    return f"{symbol}{major:,.2f} {currency_upper}"
