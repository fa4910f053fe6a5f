"""Pydantic schemas for invoices, deal terms and billing summaries."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, field_validator, model_validator

from billing.config import settings
from billing.models.deal import DealStatus
from billing.models.invoice import InvoiceStatus, InvoiceType


# Columns an edit may change but never clear
NON_NULLABLE_UPDATES = ("concept", "subtotal", "has_tax", "currency", "is_collection_account")


def _check_currency(v: str) -> str:
    v = v.upper()
    if v not in settings.supported_currencies:
        allowed = ", ".join(settings.supported_currencies)
        raise ValueError(f"currency must be one of: {allowed}")
    return v


class DealTerms(BaseModel):
    """Contract terms that seed recurring invoice generation."""
    currency: str
    recurring_amount_original: Decimal
    exchange_rate: Decimal | None = None
    start_date: date
    billing_start_date: date | None = None
    first_period_covered: bool = False

    model_config = {"from_attributes": True}

    @field_validator("recurring_amount_original")
    @classmethod
    def amount_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("recurring_amount_original cannot be negative")
        return v


class DealOut(DealTerms):
    id: str
    project_id: str
    implementation_fee_original: Decimal
    status: DealStatus


class InvoiceCreate(BaseModel):
    invoice_type: InvoiceType
    period_month: date | None = None
    concept: str
    subtotal: Decimal
    has_tax: bool = False
    currency: str
    exchange_rate: Decimal | None = None
    invoice_number: str | None = None
    is_collection_account: bool = False
    due_date: date | None = None
    notes: str | None = None

    @field_validator("concept")
    @classmethod
    def concept_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("concept is required")
        return v

    @field_validator("subtotal")
    @classmethod
    def subtotal_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("subtotal cannot be negative")
        return v

    @field_validator("currency")
    @classmethod
    def valid_currency(cls, v: str) -> str:
        return _check_currency(v)

    @model_validator(mode="after")
    def recurring_needs_period(self) -> "InvoiceCreate":
        if self.invoice_type == InvoiceType.RECURRING and self.period_month is None:
            raise ValueError("period_month is required for RECURRING invoices")
        return self


class InvoiceUpdate(BaseModel):
    concept: str | None = None
    subtotal: Decimal | None = None
    has_tax: bool | None = None
    currency: str | None = None
    exchange_rate: Decimal | None = None
    invoice_number: str | None = None
    is_collection_account: bool | None = None
    due_date: date | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def required_fields_not_cleared(self) -> "InvoiceUpdate":
        cleared = sorted(
            name for name in NON_NULLABLE_UPDATES
            if name in self.model_fields_set and getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"cannot be null: {', '.join(cleared)}")
        return self

    @field_validator("subtotal")
    @classmethod
    def subtotal_not_negative(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v < 0:
            raise ValueError("subtotal cannot be negative")
        return v

    @field_validator("currency")
    @classmethod
    def valid_currency(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _check_currency(v)


class MarkInvoicedRequest(BaseModel):
    invoice_number: str | None = None
    document_ref: str | None = None


class MarkPaidRequest(BaseModel):
    paid_at: datetime
    amount_received: Decimal
    retention_amount: Decimal | None = None
    payment_proof_ref: str | None = None

    @field_validator("amount_received")
    @classmethod
    def amount_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("amount_received cannot be negative")
        return v

    @field_validator("retention_amount")
    @classmethod
    def retention_not_negative(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v < 0:
            raise ValueError("retention_amount cannot be negative")
        return v


class GenerateRequest(BaseModel):
    # Defaults to the current month plus the configured lookahead
    up_to_month: date | None = None


class GenerateResult(BaseModel):
    project_id: str
    up_to_month: date
    created: int


class InvoiceOut(BaseModel):
    id: str
    project_id: str
    invoice_type: InvoiceType
    period_month: date | None = None
    concept: str
    subtotal: Decimal
    has_tax: bool
    tax_amount: Decimal
    total: Decimal
    currency: str
    exchange_rate: Decimal | None = None
    total_in_base_currency: Decimal
    status: InvoiceStatus
    invoice_number: str | None = None
    document_ref: str | None = None
    is_collection_account: bool
    due_date: date | None = None
    paid_at: datetime | None = None
    amount_received: Decimal | None = None
    retention_amount: Decimal | None = None
    payment_proof_ref: str | None = None
    net_received: Decimal | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BillingSummaryOut(BaseModel):
    base_currency: str
    total_billed: Decimal
    total_invoiced: Decimal
    total_paid: Decimal
    total_pending: Decimal
    total_retention: Decimal
    total_tax_owed: Decimal
    paid_by_currency: dict[str, Decimal]
    tax_owed_by_currency: dict[str, Decimal]
    pending_count: int
    invoiced_count: int
    paid_count: int
    advance_invoices: list[InvoiceOut]
    implementation_invoices: list[InvoiceOut]
    recurring_invoices: list[InvoiceOut]
    awaiting_payment: list[InvoiceOut]
    overdue: list[InvoiceOut]

    model_config = {"from_attributes": True}
