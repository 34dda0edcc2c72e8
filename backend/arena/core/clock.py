"""
Time and money helpers shared by models and services.

Timestamps are stored as naive UTC; money is stored as integer cents.
"""

from datetime import datetime, timedelta, UTC
from decimal import Decimal, ROUND_DOWN

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalise aware datetimes to naive UTC; naive input is assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def floor_to_bucket(value: datetime, seconds: int) -> datetime:
    """Start of the fixed-width bucket containing `value`."""
    value = as_naive_utc(value)
    epoch = datetime(1970, 1, 1)
    offset = int((value - epoch).total_seconds()) // seconds * seconds
    return epoch + timedelta(seconds=offset)


def cents_to_amount(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(CENT)


def amount_to_cents(amount: Decimal) -> int:
    """Convert a decimal amount to cents, truncating sub-cent dust."""
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_DOWN))
