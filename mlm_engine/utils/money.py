# mlm_engine/utils/money.py
"""
Fixed-point money helpers. Amounts are Decimal with two places (cents).
"""
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """
    Convert a DB value, string or int to a cent-quantized Decimal.

    Floats go through str() first (SQLite returns SUM() as float).
    """
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    """amount * percent / 100, rounded half-up to the cent."""
    return to_money(Decimal(amount) * Decimal(percent) / Decimal("100"))


def is_multiple_of(amount: Decimal, step: Decimal) -> bool:
    if not step:
        return True
    return (Decimal(amount) % Decimal(step)) == 0


def parse_amount(raw) -> Decimal:
    """
    Parse a client-supplied amount.

    Raises:
        InvalidAmount: not a number, not positive, or more than two decimals
    """
    from decimal import InvalidOperation
    from mlm_engine.errors import InvalidAmount

    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, AttributeError):
        raise InvalidAmount(raw, reason=f"Not a valid amount: {raw!r}")

    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(raw, reason="Amount must be positive")
    if amount != amount.quantize(CENT):
        raise InvalidAmount(raw, reason="Amount has more than two decimal places")
    return amount.quantize(CENT)
