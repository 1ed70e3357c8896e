"""Fixed-point money helpers.

Amounts inside the pipeline are integers in minor units (öre, cents).
Configuration values (prices, thresholds, fixed discounts) arrive as
decimals in major units and are converted with ``to_minor``. Every
rounding step uses ROUND_HALF_UP so results are reproducible.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

MINOR_UNITS = 100
_ONE = Decimal(1)
_CENT = Decimal("0.01")

Number = Union[Decimal, int, str]


def _decimal(value: Number) -> Decimal:
    if isinstance(value, float):
        # floats only ever come from JSON input; go through str to avoid binary noise
        value = str(value)
    return Decimal(value)


def to_minor(value: Number) -> int:
    """Convert a major-unit amount (``Decimal("12.50")``) to minor units (``1250``)."""
    return int((_decimal(value) * MINOR_UNITS).quantize(_ONE, rounding=ROUND_HALF_UP))


def from_minor(amount: int) -> Decimal:
    """Convert minor units back to a two-place major-unit decimal."""
    return (Decimal(amount) / MINOR_UNITS).quantize(_CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: int) -> str:
    """Gateway wire format for major-unit amounts, e.g. ``"850.00"``."""
    return str(from_minor(amount))


def extract_tax(subtotal: int, rate: Number) -> int:
    """Tax contained in a tax-inclusive amount: ``subtotal * rate / (1 + rate)``."""
    rate = _decimal(rate)
    if rate <= 0:
        return 0
    tax = Decimal(subtotal) * rate / (1 + rate)
    return int(tax.quantize(_ONE, rounding=ROUND_HALF_UP))


def percentage_of(amount: int, percent: Number) -> int:
    share = Decimal(amount) * _decimal(percent) / 100
    return int(share.quantize(_ONE, rounding=ROUND_HALF_UP))
