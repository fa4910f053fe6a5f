"""Deal — the signed commercial agreement behind a project.

Owned by the sales side of the application; the billing engine only reads
it to seed recurring invoice generation.

Status:  active | on_hold | churned
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Enum as SAEnum, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing.database import Base


class DealStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ON_HOLD = "ON_HOLD"
    CHURNED = "CHURNED"


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # ── Commercial terms ─────────────────────────────────────
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    recurring_amount_original: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    implementation_fee_original: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0")
    )
    exchange_rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))

    # ── Billing configuration ────────────────────────────────
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    billing_start_date: Mapped[date | None] = mapped_column(Date)
    # First month already paid through the implementation fee
    first_period_covered: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[DealStatus] = mapped_column(
        SAEnum(DealStatus, native_enum=False, length=20),
        default=DealStatus.ACTIVE,
        index=True,
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
