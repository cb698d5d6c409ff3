"""
Money helpers.
Amounts are stored as floats; arithmetic that must balance exactly
(settlements, rollup sums) goes through Decimal rounded to paise.
"""
from decimal import Decimal, ROUND_HALF_UP

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(amount) -> Decimal:
    if amount is None:
        return ZERO
    return Decimal(str(amount)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def percentage_of(amount, percentage) -> Decimal:
    """percentage_of(100000, 5) == Decimal('5000.00')"""
    if not amount or not percentage:
        return ZERO
    return to_money(Decimal(str(amount)) * Decimal(str(percentage)) / Decimal(100))
