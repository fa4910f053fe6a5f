"""Aggregate model imports for Alembic auto-detection."""

from billing.models.deal import Deal, DealStatus  # noqa: F401
from billing.models.invoice import Invoice, InvoiceStatus, InvoiceType  # noqa: F401

__all__ = ["Deal", "DealStatus", "Invoice", "InvoiceStatus", "InvoiceType"]
