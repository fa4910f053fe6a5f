"""Field locking — prevent edits to fields frozen by an invoice's state.

The check function returns a LockInfo describing which fields are locked
and why, without raising.  The caller (ledger service) decides whether to
reject the edit based on which fields are being updated.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from billing.models.invoice import Invoice, InvoiceStatus


# ── Data structures ────────────────────────────────────────────


@dataclass
class FieldLock:
    """A single locked field with reason and unlock instructions."""
    field: str
    reason: str
    blocker_type: str   # "invoice_status"
    blocker_ref: str    # invoice number or id
    unlock_hint: str


@dataclass
class LockInfo:
    """Lock state for an entity.  Empty locked_fields means nothing locked."""
    locked_fields: dict[str, FieldLock] = field(default_factory=dict)

    def check_update(self, updating_fields: set[str]) -> FieldLock | None:
        """Return the first FieldLock that conflicts, or None."""
        for f in sorted(updating_fields):
            if f in self.locked_fields:
                return self.locked_fields[f]
        return None


def _add_locks(
    info: LockInfo,
    field_names: list[str],
    reason: str,
    blocker_type: str,
    blocker_ref: str,
    unlock_hint: str,
) -> None:
    for name in field_names:
        info.locked_fields[name] = FieldLock(
            field=name,
            reason=f"Cannot edit {name}: {reason}",
            blocker_type=blocker_type,
            blocker_ref=blocker_ref,
            unlock_hint=unlock_hint,
        )


# ── Invoice locks (status-based, no DB query needed) ──────────


INVOICE_MONETARY_FIELDS = ["subtotal", "has_tax", "currency", "exchange_rate"]


def get_invoice_locks(invoice: Invoice) -> LockInfo:
    """Paid invoices are financially frozen."""
    info = LockInfo()

    if invoice.status != InvoiceStatus.PAID:
        return info

    ref = invoice.invoice_number or invoice.id
    _add_locks(
        info,
        INVOICE_MONETARY_FIELDS,
        reason=f"Invoice {ref} is already paid",
        blocker_type="invoice_status",
        blocker_ref=ref,
        unlock_hint="Issue a new invoice for any adjustment.",
    )
    return info
