from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from bson.decimal128 import Decimal128

from settlement.utils.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value, *, field: str = "amount") -> Decimal:
    """
    Coerce API / DB values into Decimal.
    Floats go through str() so 0.1 stays 0.1.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field}")
    if not result.is_finite():
        raise ValidationError(f"Invalid {field}")
    return result


def quantize_money(value: Decimal) -> Decimal:
    """Round to 2 decimal places, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def has_cent_precision(value: Decimal) -> bool:
    return value == value.quantize(CENT)


def to_bson(value: Decimal) -> Decimal128:
    return Decimal128(quantize_money(value))


def from_bson(value) -> Decimal:
    return to_decimal(value)


def format_money(value) -> str:
    return str(quantize_money(to_decimal(value)))


def bson_safe(value):
    """Recursively convert Decimal values so a document can be written to Mongo."""
    if isinstance(value, Decimal):
        return to_bson(value)
    if isinstance(value, dict):
        return {k: bson_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [bson_safe(v) for v in value]
    return value
