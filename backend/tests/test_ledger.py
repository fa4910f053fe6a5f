"""Invoice ledger: creation, lifecycle transitions and recurring generation."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.middleware.exceptions import (
    CannotDeletePaid,
    DuplicatePeriod,
    InvalidExchangeRate,
    InvalidTransition,
    InvoiceNotFound,
    NegativeAmount,
)
from billing.models import Invoice, InvoiceStatus, InvoiceType
from billing.schemas.invoice import DealTerms
from billing.services import ledger
from billing.services.invoice_store import InvoiceStore

PAID_AT = datetime(2024, 3, 10, 12, 0)


def cop_terms(**overrides) -> DealTerms:
    fields = {
        "currency": "COP",
        "recurring_amount_original": Decimal("4000000"),
        "exchange_rate": Decimal("4000"),
        "start_date": date(2024, 1, 15),
        "first_period_covered": True,
    }
    fields.update(overrides)
    return DealTerms(**fields)


async def create_advance(db: AsyncSession, **overrides) -> Invoice:
    fields = {
        "invoice_type": InvoiceType.ADVANCE,
        "concept": "Advance payment",
        "subtotal": Decimal("500"),
        "has_tax": False,
        "currency": "USD",
    }
    fields.update(overrides)
    return await ledger.create_invoice(db, "proj-1", **fields)


@pytest.mark.asyncio
class TestRecurringGeneration:

    async def test_generates_missing_months(self, db_session: AsyncSession):
        created = await ledger.generate_recurring_invoices(
            db_session, "proj-1", cop_terms(), date(2024, 4, 1),
        )
        assert created == 3

        invoices = await ledger.list_invoices(db_session, "proj-1")
        assert [i.period_month for i in invoices] == [
            date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1),
        ]
        for inv in invoices:
            assert inv.invoice_type == InvoiceType.RECURRING
            assert inv.status == InvoiceStatus.PENDING
            assert inv.has_tax is True
            assert inv.subtotal == Decimal("4000000")
            assert inv.tax_amount == Decimal("760000")
            assert inv.total == Decimal("4760000")
            assert inv.total_in_base_currency == Decimal("1190.00")

    async def test_rerun_is_idempotent(self, db_session: AsyncSession):
        await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 4, 1))
        again = await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 4, 1))
        assert again == 0
        assert await InvoiceStore(db_session).count_invoices("proj-1") == 3

    async def test_extends_from_last_billed_month(self, db_session: AsyncSession):
        await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 3, 1))
        created = await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 5, 20))
        assert created == 2
        periods = await InvoiceStore(db_session).existing_periods("proj-1")
        assert periods == {date(2024, m, 1) for m in (2, 3, 4, 5)}

    async def test_first_month_billed_when_not_covered(self, db_session: AsyncSession):
        created = await ledger.generate_recurring_invoices(
            db_session, "proj-1", cop_terms(first_period_covered=False), date(2024, 2, 1),
        )
        assert created == 2
        periods = await InvoiceStore(db_session).existing_periods("proj-1")
        assert date(2024, 1, 1) in periods

    async def test_billing_start_date_overrides_start(self, db_session: AsyncSession):
        terms = cop_terms(billing_start_date=date(2024, 3, 5), first_period_covered=False)
        created = await ledger.generate_recurring_invoices(db_session, "proj-1", terms, date(2024, 4, 1))
        assert created == 2

    async def test_skips_manually_created_month(self, db_session: AsyncSession):
        await ledger.create_invoice(
            db_session, "proj-1",
            invoice_type=InvoiceType.RECURRING,
            concept="March, billed by hand",
            subtotal=Decimal("3500000"),
            has_tax=True,
            currency="COP",
            exchange_rate=Decimal("4000"),
            period_month=date(2024, 3, 1),
        )
        created = await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 4, 1))
        assert created == 2

    async def test_nothing_to_generate_before_start(self, db_session: AsyncSession):
        created = await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 1, 1))
        assert created == 0

    async def test_foreign_deal_without_rate_fails(self, db_session: AsyncSession):
        with pytest.raises(InvalidExchangeRate):
            await ledger.generate_recurring_invoices(
                db_session, "proj-1", cop_terms(exchange_rate=None), date(2024, 4, 1),
            )

    async def test_base_currency_deal(self, db_session: AsyncSession):
        terms = cop_terms(currency="USD", recurring_amount_original=Decimal("1000"), exchange_rate=None)
        await ledger.generate_recurring_invoices(db_session, "proj-1", terms, date(2024, 2, 1))
        (inv,) = await ledger.list_invoices(db_session, "proj-1")
        assert inv.total == Decimal("1190.00")
        assert inv.total_in_base_currency == Decimal("1190.00")


@pytest.mark.asyncio
class TestCreateInvoice:

    async def test_local_currency_without_rate(self, db_session: AsyncSession):
        with pytest.raises(InvalidExchangeRate):
            await create_advance(db_session, currency="COP", subtotal=Decimal("2000000"))

    async def test_derived_amounts(self, db_session: AsyncSession):
        inv = await create_advance(
            db_session,
            currency="COP",
            subtotal=Decimal("2000000"),
            has_tax=True,
            exchange_rate=Decimal("4000"),
        )
        assert inv.status == InvoiceStatus.PENDING
        assert inv.tax_amount == Decimal("380000.00")
        assert inv.total == Decimal("2380000.00")
        assert inv.total_in_base_currency == Decimal("595.00")

    async def test_duplicate_recurring_period(self, db_session: AsyncSession):
        await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 2, 1))
        with pytest.raises(DuplicatePeriod) as exc_info:
            await ledger.create_invoice(
                db_session, "proj-1",
                invoice_type=InvoiceType.RECURRING,
                concept="Duplicate",
                subtotal=Decimal("4000000"),
                has_tax=True,
                currency="COP",
                exchange_rate=Decimal("4000"),
                period_month=date(2024, 2, 17),
            )
        assert exc_info.value.status_code == 409

    async def test_negative_subtotal_rejected(self, db_session: AsyncSession):
        with pytest.raises(NegativeAmount) as exc_info:
            await create_advance(db_session, subtotal=Decimal("-100"), has_tax=True)
        assert exc_info.value.status_code == 422
        assert await InvoiceStore(db_session).count_invoices("proj-1") == 0

    async def test_unique_index_backstops_duplicate_period(self, db_session: AsyncSession):
        store = InvoiceStore(db_session)
        first = ledger._new_invoice(
            "proj-1", InvoiceType.RECURRING, "February", Decimal("100"), False, "USD", None,
            date(2024, 2, 1),
        )
        await store.insert_invoice(first)
        # Skips the existing-period read, as a racing generator would
        second = ledger._new_invoice(
            "proj-1", InvoiceType.RECURRING, "February again", Decimal("100"), False, "USD", None,
            date(2024, 2, 1),
        )
        with pytest.raises(DuplicatePeriod):
            await store.insert_invoice(second)

    async def test_same_month_allowed_for_other_types(self, db_session: AsyncSession):
        await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 2, 1))
        inv = await create_advance(db_session, period_month=date(2024, 2, 1))
        assert inv.period_month == date(2024, 2, 1)

    async def test_recurring_requires_period(self, db_session: AsyncSession):
        with pytest.raises(ValueError):
            await ledger.create_invoice(
                db_session, "proj-1",
                invoice_type=InvoiceType.RECURRING,
                concept="No period",
                subtotal=Decimal("1"),
                has_tax=False,
                currency="USD",
            )


@pytest.mark.asyncio
class TestLifecycle:

    async def test_pending_to_invoiced_to_paid(self, db_session: AsyncSession):
        inv = await create_advance(db_session)

        inv = await ledger.mark_invoiced(db_session, inv.id, invoice_number="FE-101", document_ref="docs/fe-101.pdf")
        assert inv.status == InvoiceStatus.INVOICED
        assert inv.invoice_number == "FE-101"
        assert inv.document_ref == "docs/fe-101.pdf"

        inv = await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("480"), Decimal("20"), "proofs/1.png")
        assert inv.status == InvoiceStatus.PAID
        assert inv.amount_received == Decimal("480")
        assert inv.retention_amount == Decimal("20")
        assert inv.payment_proof_ref == "proofs/1.png"
        assert inv.paid_at == PAID_AT

    async def test_pending_straight_to_paid(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        inv = await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("500"))
        assert inv.status == InvoiceStatus.PAID
        assert inv.retention_amount == Decimal("0")

    async def test_mark_paid_twice(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("500"))
        with pytest.raises(InvalidTransition) as exc_info:
            await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("500"))
        assert exc_info.value.details["current_status"] == "PAID"

    async def test_mark_invoiced_requires_pending(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await ledger.mark_invoiced(db_session, inv.id, invoice_number="FE-1")
        with pytest.raises(InvalidTransition):
            await ledger.mark_invoiced(db_session, inv.id, invoice_number="FE-2")

    async def test_paid_cannot_go_back(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("500"))
        with pytest.raises(InvalidTransition):
            await ledger.mark_invoiced(db_session, inv.id)

    async def test_offset_paid_at_stored_as_utc(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        paid_at = datetime(2024, 3, 10, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        inv = await ledger.mark_paid(db_session, inv.id, paid_at, Decimal("500"))
        assert inv.paid_at == datetime(2024, 3, 10, 10, 0)
        assert inv.paid_at.tzinfo is None

    async def test_unknown_invoice(self, db_session: AsyncSession):
        with pytest.raises(InvoiceNotFound):
            await ledger.mark_invoiced(db_session, "missing")

    async def test_net_received(self, db_session: AsyncSession):
        inv = await create_advance(db_session, subtotal=Decimal("1000"), has_tax=True)
        assert inv.net_received is None
        inv = await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("1190"))
        assert inv.net_received == Decimal("1000")

    async def test_concurrent_transition_is_detected(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        # Another writer pays the invoice behind this session's back
        await db_session.execute(
            update(Invoice)
            .where(Invoice.id == inv.id)
            .values(status=InvoiceStatus.PAID)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(InvalidTransition) as exc_info:
            await ledger.mark_invoiced(db_session, inv.id, invoice_number="FE-9")
        assert exc_info.value.details["current_status"] == "PAID"

        stored = await InvoiceStore(db_session).get(inv.id, refresh=True)
        assert stored.status == InvoiceStatus.PAID
        assert stored.invoice_number is None

    async def test_compare_and_set_misses_on_stale_status(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        store = InvoiceStore(db_session)
        assert await store.update_invoice_row(inv.id, {"notes": "x"}, InvoiceStatus.INVOICED) is None
        updated = await store.update_invoice_row(inv.id, {"notes": "x"}, InvoiceStatus.PENDING)
        assert updated.notes == "x"


@pytest.mark.asyncio
class TestUpdateInvoice:

    async def test_recomputes_derived_amounts(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        inv = await ledger.update_invoice(db_session, inv.id, {"subtotal": Decimal("1000"), "has_tax": True})
        assert inv.tax_amount == Decimal("190.00")
        assert inv.total == Decimal("1190.00")
        assert inv.total_in_base_currency == Decimal("1190.00")

    async def test_currency_change_needs_rate(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        with pytest.raises(InvalidExchangeRate):
            await ledger.update_invoice(db_session, inv.id, {"currency": "COP"})

    async def test_paid_invoice_is_frozen(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("500"))
        with pytest.raises(InvalidTransition):
            await ledger.update_invoice(db_session, inv.id, {"subtotal": Decimal("900")})

        stored = await ledger.get_invoice(db_session, inv.id)
        assert stored.subtotal == Decimal("500")

    async def test_paid_invoice_accepts_notes(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("500"))
        inv = await ledger.update_invoice(db_session, inv.id, {"notes": "Paid by wire"})
        assert inv.notes == "Paid by wire"
        assert inv.status == InvoiceStatus.PAID

    async def test_negative_subtotal_rejected(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        with pytest.raises(NegativeAmount):
            await ledger.update_invoice(db_session, inv.id, {"subtotal": Decimal("-1")})

    async def test_rejects_non_editable_fields(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        with pytest.raises(ValueError):
            await ledger.update_invoice(db_session, inv.id, {"status": InvoiceStatus.PAID})


@pytest.mark.asyncio
class TestDeleteInvoice:

    async def test_delete_unpaid(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await ledger.delete_invoice(db_session, inv.id)
        with pytest.raises(InvoiceNotFound):
            await ledger.get_invoice(db_session, inv.id)

    async def test_delete_invoiced(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await ledger.mark_invoiced(db_session, inv.id)
        await ledger.delete_invoice(db_session, inv.id)
        assert await InvoiceStore(db_session).count_invoices("proj-1") == 0

    async def test_cannot_delete_paid(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await ledger.mark_paid(db_session, inv.id, PAID_AT, Decimal("500"))
        with pytest.raises(CannotDeletePaid):
            await ledger.delete_invoice(db_session, inv.id)

    async def test_deleted_month_is_regenerated(self, db_session: AsyncSession):
        await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 3, 1))
        feb = (await ledger.list_invoices(db_session, "proj-1"))[0]
        await ledger.delete_invoice(db_session, feb.id)
        created = await ledger.generate_recurring_invoices(db_session, "proj-1", cop_terms(), date(2024, 3, 1))
        assert created == 1

    async def test_concurrent_invoicing_is_not_reported_as_paid(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        # Another writer issues the document behind this session's back
        await db_session.execute(
            update(Invoice)
            .where(Invoice.id == inv.id)
            .values(status=InvoiceStatus.INVOICED)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(InvalidTransition) as exc_info:
            await ledger.delete_invoice(db_session, inv.id)
        assert exc_info.value.details["current_status"] == "INVOICED"

        # Still unpaid, so a retry against the fresh state succeeds
        await ledger.delete_invoice(db_session, inv.id)
        assert await InvoiceStore(db_session).count_invoices("proj-1") == 0

    async def test_concurrent_payment_blocks_delete(self, db_session: AsyncSession):
        inv = await create_advance(db_session)
        await db_session.execute(
            update(Invoice)
            .where(Invoice.id == inv.id)
            .values(status=InvoiceStatus.PAID)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(CannotDeletePaid):
            await ledger.delete_invoice(db_session, inv.id)
