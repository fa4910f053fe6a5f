"""Invoice ledger — creation, lifecycle transitions and recurring generation.

Every function takes the caller's session and works inside its
transaction: nothing here commits.  Monetary fields are derived in one
place (`_derive_amounts`) from the Money and Tax modules so an invoice's
tax, total and base-currency total can never disagree with its subtotal.

State machine:

    PENDING ──mark_invoiced──▶ INVOICED ──mark_paid──▶ PAID
       └────────────────mark_paid────────────────────▶ PAID

PAID is terminal.  Transitions are compare-and-set against the status
that was read, so a concurrent transition fails with InvalidTransition
rather than being overwritten.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from billing.middleware.exceptions import (
    CannotDeletePaid,
    DuplicatePeriod,
    InvalidTransition,
    InvoiceNotFound,
    NegativeAmount,
)
from billing.models.invoice import Invoice, InvoiceStatus, InvoiceType
from billing.schemas.invoice import DealTerms
from billing.services import money
from billing.services.invoice_store import InvoiceStore
from billing.services.periods import add_months, first_of_month, iter_months, recurring_concept
from billing.services.tax import compute_tax
from billing.utils.locks import get_invoice_locks

logger = logging.getLogger(__name__)

# Fields whose change forces tax/total/base recomputation
AMOUNT_INPUT_FIELDS = ("subtotal", "has_tax", "currency", "exchange_rate")

EDITABLE_FIELDS = (
    "concept", "subtotal", "has_tax", "currency", "exchange_rate",
    "invoice_number", "is_collection_account", "due_date", "notes",
)


def _derive_amounts(subtotal, has_tax: bool, currency: str, exchange_rate) -> dict:
    """Subtotal, tax, total and base total for one invoice, fully rounded."""
    rate = money.validate_currency_pair(currency, exchange_rate)
    subtotal = money.round2(subtotal)
    if subtotal < 0:
        raise NegativeAmount("subtotal", subtotal)
    breakdown = compute_tax(subtotal, has_tax)
    return {
        "subtotal": subtotal,
        "has_tax": has_tax,
        "tax_amount": breakdown.tax_amount,
        "total": breakdown.total,
        "currency": currency,
        "exchange_rate": rate,
        "total_in_base_currency": money.to_base(breakdown.total, currency, rate),
    }


async def get_invoice(db: AsyncSession, invoice_id: str) -> Invoice:
    invoice = await InvoiceStore(db).get(invoice_id)
    if invoice is None:
        raise InvoiceNotFound(invoice_id)
    return invoice


async def list_invoices(db: AsyncSession, project_id: str) -> list[Invoice]:
    return await InvoiceStore(db).find_invoices(project_id)


def _as_utc_naive(moment: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _new_invoice(
    project_id: str,
    invoice_type: InvoiceType,
    concept: str,
    subtotal,
    has_tax: bool,
    currency: str,
    exchange_rate,
    period_month: date | None,
    **extra,
) -> Invoice:
    amounts = _derive_amounts(subtotal, has_tax, currency, exchange_rate)
    return Invoice(
        project_id=project_id,
        invoice_type=invoice_type,
        period_month=period_month,
        concept=concept,
        status=InvoiceStatus.PENDING,
        **amounts,
        **extra,
    )


async def create_invoice(
    db: AsyncSession,
    project_id: str,
    *,
    invoice_type: InvoiceType,
    concept: str,
    subtotal,
    has_tax: bool,
    currency: str,
    exchange_rate=None,
    period_month: date | None = None,
    due_date: date | None = None,
    notes: str | None = None,
    invoice_number: str | None = None,
    is_collection_account: bool = False,
) -> Invoice:
    """Create a PENDING invoice with derived tax and base-currency totals.

    Raises:
        InvalidExchangeRate: foreign currency without a positive rate.
        DuplicatePeriod: a recurring invoice already covers the month.
        ValueError: a recurring invoice without a period.
    """
    store = InvoiceStore(db)
    invoice_type = InvoiceType(invoice_type)

    if period_month is not None:
        period_month = first_of_month(period_month)
    if invoice_type == InvoiceType.RECURRING:
        if period_month is None:
            raise ValueError("period_month is required for RECURRING invoices")
        if period_month in await store.existing_periods(project_id):
            raise DuplicatePeriod(project_id, period_month)

    invoice = _new_invoice(
        project_id, invoice_type, concept, subtotal, has_tax, currency, exchange_rate,
        period_month,
        due_date=due_date,
        notes=notes,
        invoice_number=invoice_number,
        is_collection_account=is_collection_account,
    )
    await store.insert_invoice(invoice)

    logger.info(
        "Created %s invoice %s for project %s (%s %s)",
        invoice_type.value, invoice.id, project_id, invoice.currency, invoice.total,
    )
    return invoice


async def update_invoice(db: AsyncSession, invoice_id: str, fields: dict) -> Invoice:
    """Edit an invoice, recomputing derived amounts when inputs change.

    Raises:
        InvoiceNotFound: unknown id.
        InvalidTransition: the invoice is paid and the edit touches a
            monetary field, or the invoice changed status concurrently.
    """
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

    invoice = await get_invoice(db, invoice_id)

    # ── Frozen field check ────────────────────────────────────
    lock_info = get_invoice_locks(invoice)
    conflict = lock_info.check_update(set(fields))
    if conflict:
        raise InvalidTransition(
            invoice_id, invoice.status, "edit",
            reason=f"{conflict.reason}. {conflict.unlock_hint}",
        )

    values = dict(fields)
    if any(name in fields for name in AMOUNT_INPUT_FIELDS):
        values.update(_derive_amounts(
            fields.get("subtotal", invoice.subtotal),
            fields.get("has_tax", invoice.has_tax),
            fields.get("currency", invoice.currency),
            fields["exchange_rate"] if "exchange_rate" in fields else invoice.exchange_rate,
        ))

    if not values:
        return invoice

    updated = await InvoiceStore(db).update_invoice_row(invoice_id, values, expected_status=invoice.status)
    if updated is None:
        raise await _concurrent_change(db, invoice_id, invoice.status, "edit")

    logger.info("Updated invoice %s: %s", invoice_id, ", ".join(sorted(fields)))
    return updated


async def mark_invoiced(
    db: AsyncSession,
    invoice_id: str,
    invoice_number: str | None = None,
    document_ref: str | None = None,
) -> Invoice:
    """PENDING → INVOICED, attaching the issued document."""
    invoice = await get_invoice(db, invoice_id)
    if invoice.status != InvoiceStatus.PENDING:
        raise InvalidTransition(invoice_id, invoice.status, "mark as INVOICED")

    values = {"status": InvoiceStatus.INVOICED}
    if invoice_number is not None:
        values["invoice_number"] = invoice_number
    if document_ref is not None:
        values["document_ref"] = document_ref

    updated = await InvoiceStore(db).update_invoice_row(
        invoice_id, values, expected_status=InvoiceStatus.PENDING,
    )
    if updated is None:
        raise await _concurrent_change(db, invoice_id, InvoiceStatus.PENDING, "mark as INVOICED")

    logger.info("Invoice %s marked INVOICED (number=%s)", invoice_id, updated.invoice_number)
    return updated


async def mark_paid(
    db: AsyncSession,
    invoice_id: str,
    paid_at: datetime,
    amount_received,
    retention_amount=None,
    proof_ref: str | None = None,
) -> Invoice:
    """PENDING or INVOICED → PAID, recording the payment.

    Offset-aware `paid_at` values are converted to naive UTC.
    """
    invoice = await get_invoice(db, invoice_id)
    if invoice.status == InvoiceStatus.PAID:
        raise InvalidTransition(invoice_id, invoice.status, "mark as PAID")

    values = {
        "status": InvoiceStatus.PAID,
        "paid_at": _as_utc_naive(paid_at),
        "amount_received": money.round2(amount_received),
        "retention_amount": money.round2(retention_amount if retention_amount is not None else Decimal("0")),
        "payment_proof_ref": proof_ref,
    }
    expected = invoice.status
    updated = await InvoiceStore(db).update_invoice_row(invoice_id, values, expected_status=expected)
    if updated is None:
        raise await _concurrent_change(db, invoice_id, expected, "mark as PAID")

    logger.info(
        "Invoice %s marked PAID from %s (received %s %s)",
        invoice_id, expected.value, updated.currency, updated.amount_received,
    )
    return updated


async def delete_invoice(db: AsyncSession, invoice_id: str) -> None:
    """Remove an unpaid invoice."""
    invoice = await get_invoice(db, invoice_id)
    if invoice.status == InvoiceStatus.PAID:
        raise CannotDeletePaid(invoice_id)

    expected = invoice.status
    deleted = await InvoiceStore(db).delete_invoice_row(invoice_id, expected_status=expected)
    if not deleted:
        error = await _concurrent_change(db, invoice_id, expected, "delete")
        if isinstance(error, InvalidTransition) and error.current_status == InvoiceStatus.PAID:
            raise CannotDeletePaid(invoice_id)
        raise error

    logger.info("Deleted %s invoice %s", expected.value, invoice_id)


async def generate_recurring_invoices(
    db: AsyncSession,
    project_id: str,
    deal: DealTerms,
    up_to_month: date,
) -> int:
    """Create the missing monthly invoices of a deal up to `up_to_month`.

    Idempotent: months that already carry a recurring invoice are skipped,
    so overlapping or repeated runs never bill a month twice.  Returns the
    number of invoices created.
    """
    store = InvoiceStore(db)
    await store.lock_project(project_id)

    anchor = first_of_month(deal.billing_start_date or deal.start_date)
    if deal.first_period_covered:
        # First month was folded into the implementation invoice
        anchor = add_months(anchor, 1)

    existing = await store.existing_periods(project_id)
    created = 0

    for month in iter_months(anchor, up_to_month):
        if month in existing:
            logger.debug("Project %s already billed for %s", project_id, month)
            continue
        # Recurring fees are always taxable
        invoice = _new_invoice(
            project_id, InvoiceType.RECURRING, recurring_concept(month),
            deal.recurring_amount_original, True, deal.currency, deal.exchange_rate,
            month,
        )
        await store.insert_invoice(invoice)
        existing.add(month)
        created += 1

    logger.info(
        "Generated %d recurring invoice(s) for project %s up to %s",
        created, project_id, first_of_month(up_to_month),
    )
    return created


async def _concurrent_change(
    db: AsyncSession,
    invoice_id: str,
    expected: InvoiceStatus,
    attempted: str,
) -> Exception:
    """Build the error for a compare-and-set that matched no row."""
    current = await InvoiceStore(db).get(invoice_id, refresh=True)
    if current is None:
        return InvoiceNotFound(invoice_id)
    return InvalidTransition(
        invoice_id, current.status, attempted,
        reason=f"expected {expected.value}; changed concurrently",
    )
