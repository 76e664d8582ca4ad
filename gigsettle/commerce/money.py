"""Money helpers.

All amounts are Decimals with at most six decimal places, matching the
precision the ledger stores.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

MONEY_QUANTUM = Decimal("0.000001")

# Largest single amount accepted from callers
MAX_AMOUNT = Decimal("1000000000000")

AmountLike = Union[Decimal, str, int, float]


def to_money(value: AmountLike) -> Decimal:
    """Parse an amount and normalize it to six decimal places.

    Floats go through ``str`` so 0.1 stays 0.1. Extra precision is rejected,
    never rounded away.

    Raises:
        ValueError: If the value is not a finite number, has more than six
            decimal places, or exceeds ``MAX_AMOUNT`` in magnitude.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    if abs(amount) > MAX_AMOUNT:
        raise ValueError(f"Amount {value!r} exceeds the maximum of {MAX_AMOUNT}")
    try:
        quantized = amount.quantize(MONEY_QUANTUM)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if quantized != amount:
        raise ValueError(f"Amount {value!r} has more than 6 decimal places")
    return quantized


def money_str(amount: Decimal) -> str:
    """Format an amount for storage."""
    return str(to_money(amount))


def total(amounts) -> Decimal:
    """Sum amounts exactly."""
    return sum((Decimal(a) for a in amounts), Decimal("0")).quantize(MONEY_QUANTUM)
