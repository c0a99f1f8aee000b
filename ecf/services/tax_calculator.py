"""
ITBIS calculation for tax-exclusive invoice lines.
line amount = round2(quantity * unit_price); line tax = round2(quantity * unit_price * rate)
"""

from dataclasses import dataclass
from decimal import Decimal

from ecf.utils import round2, to_decimal

TOTALS_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def line_amount(quantity, unit_price) -> Decimal:
    return round2(to_decimal(quantity) * to_decimal(unit_price))


def line_tax(quantity, unit_price, tax_rate) -> Decimal:
    return round2(to_decimal(quantity) * to_decimal(unit_price) * to_decimal(tax_rate))


def compute_totals(lines) -> Totals:
    """
    Sum line amounts and line taxes. Each line is rounded before summing,
    so total == subtotal + sum(line tax) exactly.
    """
    subtotal = Decimal("0.00")
    tax = Decimal("0.00")
    for line in lines:
        subtotal += line_amount(line.quantity, line.unit_price)
        tax += line_tax(line.quantity, line.unit_price, line.tax_rate)
    return Totals(subtotal=round2(subtotal), tax=round2(tax), total=round2(subtotal + tax))


def within_tolerance(declared, computed: Decimal) -> bool:
    return abs(to_decimal(declared) - computed) <= TOTALS_TOLERANCE
