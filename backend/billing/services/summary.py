"""Billing summary — read-only roll-ups over a set of invoices.

Nothing is cached: totals are recomputed from the invoices passed in, so
there is no running balance that could drift from the ledger.

Conventions:
    - billed / invoiced / pending totals are in the base currency
      (sums of total_in_base_currency)
    - paid, retention and tax owed are sums of the recorded amounts in
      each invoice's own currency; the *_by_currency maps split them
    - tax is owed on a cash basis: only once an invoice is PAID
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from billing.config import settings
from billing.models.invoice import Invoice, InvoiceStatus, InvoiceType

ZERO = Decimal("0.00")

REPORT_COLUMNS = [
    "date", "category", "concept", "currency", "amount", "amount_base", "status",
]


@dataclass
class BillingSummary:
    base_currency: str
    total_billed: Decimal = ZERO
    total_invoiced: Decimal = ZERO
    total_paid: Decimal = ZERO
    total_pending: Decimal = ZERO
    total_retention: Decimal = ZERO
    total_tax_owed: Decimal = ZERO
    paid_by_currency: dict[str, Decimal] = field(default_factory=dict)
    tax_owed_by_currency: dict[str, Decimal] = field(default_factory=dict)
    pending_count: int = 0
    invoiced_count: int = 0
    paid_count: int = 0
    advance_invoices: list[Invoice] = field(default_factory=list)
    implementation_invoices: list[Invoice] = field(default_factory=list)
    recurring_invoices: list[Invoice] = field(default_factory=list)
    awaiting_payment: list[Invoice] = field(default_factory=list)
    overdue: list[Invoice] = field(default_factory=list)


def summarize(invoices: list[Invoice], as_of: date | None = None) -> BillingSummary:
    """Compute the billing roll-up for a project (or several)."""
    as_of = as_of or date.today()
    summary = BillingSummary(base_currency=settings.base_currency)
    paid_by_currency: dict[str, Decimal] = defaultdict(lambda: ZERO)
    tax_by_currency: dict[str, Decimal] = defaultdict(lambda: ZERO)

    by_type = {
        InvoiceType.ADVANCE: summary.advance_invoices,
        InvoiceType.IMPLEMENTATION: summary.implementation_invoices,
        InvoiceType.RECURRING: summary.recurring_invoices,
    }

    for inv in invoices:
        by_type[inv.invoice_type].append(inv)

        if inv.status == InvoiceStatus.PENDING:
            summary.pending_count += 1
            summary.total_pending += inv.total_in_base_currency
            continue

        summary.total_billed += inv.total_in_base_currency

        if inv.status == InvoiceStatus.INVOICED:
            summary.invoiced_count += 1
            summary.total_invoiced += inv.total_in_base_currency
            summary.awaiting_payment.append(inv)
            if inv.due_date is not None and inv.due_date < as_of:
                summary.overdue.append(inv)
            continue

        # PAID
        summary.paid_count += 1
        received = inv.amount_received or ZERO
        summary.total_paid += received
        paid_by_currency[inv.currency] += received
        summary.total_retention += inv.retention_amount or ZERO
        if inv.has_tax:
            summary.total_tax_owed += inv.tax_amount
            tax_by_currency[inv.currency] += inv.tax_amount

    summary.paid_by_currency = dict(paid_by_currency)
    summary.tax_owed_by_currency = dict(tax_by_currency)
    return summary


def _report_date(inv: Invoice) -> date:
    if inv.paid_at is not None:
        return inv.paid_at.date() if isinstance(inv.paid_at, datetime) else inv.paid_at
    if inv.period_month is not None:
        return inv.period_month
    return inv.created_at.date()


def report_rows(invoices: list[Invoice]) -> list[dict]:
    """Flatten invoices into dated report rows for CSV export.

    Paid invoices report what was received; the others report the
    invoice total.
    """
    rows = []
    for inv in invoices:
        if inv.status == InvoiceStatus.PAID:
            amount = inv.amount_received or ZERO
        else:
            amount = inv.total
        rows.append({
            "date": _report_date(inv).isoformat(),
            "category": inv.invoice_type.value,
            "concept": inv.concept,
            "currency": inv.currency,
            "amount": amount,
            "amount_base": inv.total_in_base_currency,
            "status": inv.status.value,
        })
    rows.sort(key=lambda r: r["date"])
    return rows
