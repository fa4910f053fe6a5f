"""Persistence access for invoices.

The store takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes flush so generated
defaults are populated; committing is the caller's job (``get_db`` or the
scheduler's per-deal session).

Status-changing writes are compare-and-set: the UPDATE/DELETE only matches
when the stored status still equals the status the caller read, so a
concurrent transition makes the statement touch zero rows instead of
silently overwriting.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.middleware.exceptions import DuplicatePeriod
from billing.models.invoice import Invoice, InvoiceStatus, InvoiceType

logger = logging.getLogger(__name__)


class InvoiceStore:
    """CRUD operations for the ``invoices`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_invoices(self, project_id: str) -> list[Invoice]:
        """All invoices of a project, recurring periods first in month order."""
        stmt = (
            select(Invoice)
            .where(Invoice.project_id == project_id)
            .order_by(
                Invoice.period_month.is_(None),
                Invoice.period_month.asc(),
                Invoice.created_at.asc(),
            )
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_for_projects(self, project_ids: list[str]) -> list[Invoice]:
        if not project_ids:
            return []
        stmt = (
            select(Invoice)
            .where(Invoice.project_id.in_(project_ids))
            .order_by(Invoice.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_invoices(self, project_id: str) -> int:
        stmt = select(func.count(Invoice.id)).where(Invoice.project_id == project_id)
        return await self._session.scalar(stmt) or 0

    async def get(self, invoice_id: str, refresh: bool = False) -> Invoice | None:
        return await self._session.get(Invoice, invoice_id, populate_existing=refresh)

    async def existing_periods(self, project_id: str) -> set[date]:
        """Months that already carry a recurring invoice for the project."""
        stmt = select(Invoice.period_month).where(
            Invoice.project_id == project_id,
            Invoice.invoice_type == InvoiceType.RECURRING,
            Invoice.period_month.is_not(None),
        )
        result = await self._session.execute(stmt)
        return {row[0] for row in result.all()}

    async def lock_project(self, project_id: str) -> None:
        """Serialize recurring generation per project until the transaction ends.

        Uses a transaction-scoped advisory lock on PostgreSQL.  Other
        backends rely on the unique period index alone.
        """
        if self._session.get_bind().dialect.name != "postgresql":
            return
        await self._session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"invoices:recurring:{project_id}"},
        )

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        """Insert a new invoice and return the persisted row.

        Raises:
            DuplicatePeriod: the unique recurring-period index rejected
                the row (another transaction billed the month first).
                The session must be rolled back by the caller.
        """
        self._session.add(invoice)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            if invoice.invoice_type == InvoiceType.RECURRING and "unique" in str(exc.orig).lower():
                raise DuplicatePeriod(invoice.project_id, invoice.period_month) from exc
            raise
        return invoice

    async def update_invoice_row(
        self,
        invoice_id: str,
        fields: dict[str, Any],
        expected_status: InvoiceStatus,
    ) -> Invoice | None:
        """Apply `fields` only if the row is still in `expected_status`.

        Returns the refreshed invoice, or None when the row was missing or
        its status had changed.
        """
        stmt = (
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == expected_status)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if (result.rowcount or 0) == 0:
            return None
        await self._session.flush()
        return await self.get(invoice_id, refresh=True)

    async def delete_invoice_row(self, invoice_id: str, expected_status: InvoiceStatus) -> bool:
        """Delete the row if it is still in `expected_status`."""
        invoice = await self.get(invoice_id)
        stmt = (
            delete(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == expected_status)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        deleted = (result.rowcount or 0) > 0
        if deleted and invoice is not None:
            self._session.expunge(invoice)
        return deleted
