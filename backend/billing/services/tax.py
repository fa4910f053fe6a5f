"""Flat-rate value-added tax on invoice subtotals."""

from dataclasses import dataclass
from decimal import Decimal

from billing.config import settings
from billing.services.money import round2, to_decimal

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class TaxBreakdown:
    tax_amount: Decimal
    total: Decimal


def compute_tax(subtotal, has_tax: bool, rate=None) -> TaxBreakdown:
    """Tax and gross total for a subtotal.

    The rate defaults to the configured jurisdiction rate.  Untaxed
    subtotals carry a zero tax amount.
    """
    subtotal = to_decimal(subtotal)
    if not has_tax:
        return TaxBreakdown(tax_amount=ZERO, total=subtotal)
    tax_rate = to_decimal(settings.tax_rate if rate is None else rate)
    tax_amount = round2(subtotal * tax_rate)
    return TaxBreakdown(tax_amount=tax_amount, total=subtotal + tax_amount)
