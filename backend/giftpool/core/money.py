from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from giftpool.core.errors import InvalidAmount


CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Decimal | int | float | str


def to_decimal(value: Amount | None) -> Decimal:
    """Parse a currency input into a finite Decimal or raise InvalidAmount."""
    if value is None or isinstance(value, bool):
        raise InvalidAmount()
    try:
        # str() keeps floats like 0.1 from dragging binary noise along
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount() from None
    if not parsed.is_finite():
        raise InvalidAmount()
    return parsed


def round2(value: Amount) -> Decimal:
    """Round half-up to whole cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money(value: Amount | None) -> Decimal:
    """Normalize a value read back from storage (None means nothing collected)."""
    if value is None:
        return ZERO
    return round2(value)


def positive_amount(value: Amount | None) -> Decimal:
    amount = round2(value) if value is not None else None
    if amount is None or amount <= ZERO:
        raise InvalidAmount("Amount must be positive")
    return amount


def as_float(value: Decimal) -> float:
    return float(round2(value))
