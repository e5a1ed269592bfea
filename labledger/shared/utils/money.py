from decimal import ROUND_HALF_DOWN, ROUND_HALF_UP, Decimal
from typing import Union

ZERO = Decimal("0.00")
_CENT = Decimal("0.01")


def round_money(value: Union[Decimal, float, int, str]) -> Decimal:
    """
    Round monetary value to 2 decimal places using ROUND_HALF_UP.

    Negative amounts (refund reversals) round half towards zero so that
    a reversal never exceeds the amount it reverses.

    Examples:
        >>> round_money(10.125)
        Decimal('10.13')
        >>> round_money("10.115")
        Decimal('10.12')
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value < 0:
        return value.quantize(_CENT, rounding=ROUND_HALF_DOWN)
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def money_from_db(value) -> Decimal:
    """
    Normalise an aggregate read from the database.

    SUM() comes back as None for no rows, and as float on SQLite.
    """
    if value is None:
        return ZERO
    return round_money(Decimal(str(value)))


def sum_money(values) -> Decimal:
    """Sum an iterable of money values without float drift."""
    total = ZERO
    for value in values:
        total += round_money(value)
    return round_money(total)
