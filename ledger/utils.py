import math
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from .errors import ValidationError

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value, field: str) -> Decimal:
    """Coerce a numeric input to Decimal, rejecting NaN and infinities."""
    if isinstance(value, bool):
        raise ValidationError(field, "must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(field, "must be a finite number")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(field, f"invalid number {value!r}")
    if not result.is_finite():
        raise ValidationError(field, "must be a finite number")
    return result


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)
