"""Fixed-point money and rate handling.

Amounts cross every boundary as decimal strings and live as ``Decimal`` with an
explicit scale.  Binary floats are rejected outright.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from loanbook.services.ledger.errors import LedgerValidationError

MONEY_PLACES = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")
RATIO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# Money columns are NUMERIC(15, 2).  Rate columns are NUMERIC(7, 4) and a
# bank rate is the sum of two rates.
MONEY_LIMIT = Decimal("1e13")
RATE_LIMIT = Decimal("500")


def _to_decimal(value, field: str) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise LedgerValidationError(
            f"{field} must be a decimal string, not {type(value).__name__}", field=field
        )
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip().replace(",", ""))
        except InvalidOperation:
            raise LedgerValidationError(f"{field} is not a number: {value!r}", field=field)
    else:
        raise LedgerValidationError(f"{field} has unsupported type {type(value).__name__}", field=field)
    if not result.is_finite():
        raise LedgerValidationError(f"{field} must be finite", field=field)
    return result


def _quantized(value, field: str, places: Decimal, limit: Decimal) -> Decimal:
    result = _to_decimal(value, field)
    if result.copy_abs() >= limit:
        raise LedgerValidationError(f"{field} is out of range: {value!r}", field=field)
    try:
        return result.quantize(places, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise LedgerValidationError(f"{field} cannot be represented: {value!r}", field=field)


def to_money(value, field: str = "amount") -> Decimal:
    """Parse and quantize a money value to 2 decimal places."""
    return _quantized(value, field, MONEY_PLACES, MONEY_LIMIT)


def to_rate(value, field: str = "rate") -> Decimal:
    return _quantized(value, field, RATE_PLACES, RATE_LIMIT)


def positive_money(value, field: str = "amount") -> Decimal:
    amount = to_money(value, field)
    if amount <= 0:
        raise LedgerValidationError(f"{field} must be greater than zero, got {amount}", field=field)
    return amount


def non_negative_money(value, field: str = "amount") -> Decimal:
    amount = to_money(value, field)
    if amount < 0:
        raise LedgerValidationError(f"{field} must not be negative, got {amount}", field=field)
    return amount


def percentage(numerator: Decimal, denominator: Decimal) -> Decimal:
    """numerator / denominator * 100, or 0 when the denominator is zero."""
    if not denominator:
        return ZERO
    return (numerator / denominator * HUNDRED).quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)


def money_str(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(value.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP))
