"""
Currency and display helpers.

All pledge arithmetic is done in integer cents. Text pledges arrive in
dollars and are converted exactly once, with ROUND_HALF_UP to the cent.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from zoneinfo import ZoneInfo


CENT = Decimal("0.01")
DOLLAR = Decimal("1")


def dollars_to_cents(amount) -> int:
    """
    Convert a dollar amount to integer cents.

    Accepts Decimal, int, float or numeric string. Floats go through str()
    so 12.345 is treated as the literal 12.345, not its binary
    approximation, and always yields 1235.
    """
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    return int(amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def cents_to_dollars(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_currency(cents: int) -> str:
    """
    Whole-dollar US display string, e.g. 123456789 -> "$1,234,568".
    """
    dollars = (Decimal(cents) / 100).quantize(DOLLAR, rounding=ROUND_HALF_UP)
    if dollars < 0:
        return f"-${-dollars:,}"
    return f"${dollars:,}"


def to_display_time(value: datetime, zone: str) -> str:
    """
    Convert a stored timestamp to the display time zone (ISO-8601).
    Naive values are taken to be UTC, which is how the SMS store keeps them.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(ZoneInfo(zone)).isoformat()


def to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
