"""Invoice — one billable document issued to a project.

Amounts are stored in the invoice currency (`subtotal`, `tax_amount`,
`total`) and normalised to the base reporting currency
(`total_in_base_currency`).  Derived amounts are always written together
by the ledger service; nothing else should set them.

Types:      advance | implementation | recurring
Lifecycle:  pending → invoiced → paid
            pending → paid          (paid without a formal document)
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, Date, DateTime, Enum as SAEnum, Index, Numeric, String, Text, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing.database import Base


class InvoiceType(str, enum.Enum):
    ADVANCE = "ADVANCE"
    IMPLEMENTATION = "IMPLEMENTATION"
    RECURRING = "RECURRING"


class InvoiceStatus(str, enum.Enum):
    PENDING = "PENDING"
    INVOICED = "INVOICED"
    PAID = "PAID"


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        # At most one recurring invoice per project and month.
        Index(
            "uq_invoices_recurring_period",
            "project_id", "period_month",
            unique=True,
            postgresql_where=text("invoice_type = 'RECURRING'"),
            sqlite_where=text("invoice_type = 'RECURRING'"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # ── Classification ───────────────────────────────────────
    invoice_type: Mapped[InvoiceType] = mapped_column(
        SAEnum(InvoiceType, native_enum=False, length=20), nullable=False
    )
    period_month: Mapped[date | None] = mapped_column(Date)  # YYYY-MM-01, recurring only
    concept: Mapped[str] = mapped_column(String(255), nullable=False)

    # ── Amounts (invoice currency) ───────────────────────────
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    has_tax: Mapped[bool] = mapped_column(Boolean, default=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # ── Currency ─────────────────────────────────────────────
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    total_in_base_currency: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # ── Document ─────────────────────────────────────────────
    invoice_number: Mapped[str | None] = mapped_column(String(50))
    document_ref: Mapped[str | None] = mapped_column(String(500))  # file store key
    # Collection account instead of a formal tax invoice
    is_collection_account: Mapped[bool] = mapped_column(Boolean, default=False)
    due_date: Mapped[date | None] = mapped_column(Date)

    # ── Status ───────────────────────────────────────────────
    status: Mapped[InvoiceStatus] = mapped_column(
        SAEnum(InvoiceStatus, native_enum=False, length=20),
        default=InvoiceStatus.PENDING,
        index=True,
    )

    # ── Payment (set only when the invoice becomes PAID) ─────
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)
    amount_received: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    retention_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    payment_proof_ref: Mapped[str | None] = mapped_column(String(500))

    # ── Metadata ─────────────────────────────────────────────
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    @property
    def net_received(self) -> Decimal | None:
        """Cash kept after remitting the invoice's tax."""
        if self.status != InvoiceStatus.PAID or self.amount_received is None:
            return None
        tax = self.tax_amount if self.has_tax else Decimal("0")
        return self.amount_received - tax
