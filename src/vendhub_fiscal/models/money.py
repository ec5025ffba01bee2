"""Money helpers shared by receipts and shifts"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

# Smallest currency unit; also the payment reconciliation tolerance
MONEY_QUANT = Decimal("0.01")

ZERO = Decimal("0.00")


def to_money(value: Union[Decimal, int, str, float]) -> Decimal:
    """Quantize an amount to the smallest currency unit"""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
