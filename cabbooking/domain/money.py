"""Currency rounding helpers."""

from decimal import ROUND_HALF_UP, Decimal


def to_decimal(value) -> Decimal:
    """Exact decimal for ints/floats/Decimals (floats go through ``str``)."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value) -> int:
    """Round half-up to whole currency units (172.5 -> 173)."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_km(value) -> float:
    """Distances are kept to one decimal place."""
    return float(to_decimal(value).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def to_minor_units(amount: int) -> int:
    """Rupees -> paise."""
    return int(amount) * 100
