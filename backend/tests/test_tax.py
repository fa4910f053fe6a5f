"""Flat-rate tax computation."""

from decimal import Decimal

import pytest

from billing.services.tax import compute_tax


@pytest.mark.unit
class TestComputeTax:

    def test_untaxed_subtotal(self):
        breakdown = compute_tax(Decimal("4000000"), has_tax=False)
        assert breakdown.tax_amount == Decimal("0")
        assert breakdown.total == Decimal("4000000")

    def test_default_rate(self):
        breakdown = compute_tax(Decimal("4000000"), has_tax=True)
        assert breakdown.tax_amount == Decimal("760000.00")
        assert breakdown.total == Decimal("4760000.00")

    def test_tax_rounded_half_up(self):
        # 0.19 * 10.05 = 1.9095
        breakdown = compute_tax(Decimal("10.05"), has_tax=True)
        assert breakdown.tax_amount == Decimal("1.91")
        assert breakdown.total == Decimal("11.96")

    def test_explicit_rate(self):
        breakdown = compute_tax(Decimal("200"), has_tax=True, rate=Decimal("0.05"))
        assert breakdown.tax_amount == Decimal("10.00")
        assert breakdown.total == Decimal("210.00")

    def test_total_is_subtotal_plus_tax(self):
        for subtotal in ("0.01", "99.99", "1234567.89"):
            b = compute_tax(Decimal(subtotal), has_tax=True)
            assert b.total == Decimal(subtotal) + b.tax_amount
