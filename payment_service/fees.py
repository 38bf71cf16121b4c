from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from payment_service.exceptions import ValidationError

CENT = Decimal("0.01")
FEE_RATE = Decimal("0.029")
FIXED_FEE = Decimal("0.30")


def to_money(value) -> Decimal:
    """Coerce ``value`` to a two-place Decimal, rejecting sub-cent precision."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    try:
        # floats go through str() so 13.13 stays 13.13
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise ValidationError(f"Invalid amount: {value!r}")
        quantized = amount.quantize(CENT)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if amount != quantized:
        raise ValidationError(f"Amount {value} has more than two decimal places")
    return quantized


def processing_fee(amount) -> Decimal:
    return (to_money(amount) * FEE_RATE + FIXED_FEE).quantize(CENT, rounding=ROUND_HALF_UP)
