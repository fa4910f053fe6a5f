"""Project invoices: ledger operations and billing summaries.

Endpoints:
    GET    /api/projects/{project_id}/invoices            List a project's invoices
    POST   /api/projects/{project_id}/invoices            Create an invoice
    POST   /api/projects/{project_id}/invoices/generate   Top up recurring invoices from the deal
    GET    /api/projects/{project_id}/invoices/summary    Billing summary
    GET    /api/projects/{project_id}/invoices/export     Summary report rows as CSV
    GET    /api/invoices/summary                          Summary across several projects
    GET    /api/invoices/{invoice_id}                     Invoice detail
    PATCH  /api/invoices/{invoice_id}                     Edit an invoice
    DELETE /api/invoices/{invoice_id}                     Delete an unpaid invoice
    POST   /api/invoices/{invoice_id}/invoiced            Attach document (→ INVOICED)
    POST   /api/invoices/{invoice_id}/paid                Record payment (→ PAID)
"""

import csv
import io
from datetime import date

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from billing.database import get_db
from billing.schemas.common import PaginatedResponse
from billing.schemas.invoice import (
    BillingSummaryOut,
    GenerateRequest,
    GenerateResult,
    InvoiceCreate,
    InvoiceOut,
    InvoiceUpdate,
    MarkInvoicedRequest,
    MarkPaidRequest,
)
from billing.services import ledger
from billing.services.deals import deal_terms, default_up_to_month, get_project_deal
from billing.services.invoice_store import InvoiceStore
from billing.services.periods import first_of_month
from billing.services.summary import REPORT_COLUMNS, report_rows, summarize

project_router = APIRouter()
router = APIRouter()


# ── GET /api/projects/{project_id}/invoices ──────────────────

@project_router.get("/{project_id}/invoices", response_model=PaginatedResponse[InvoiceOut])
async def list_project_invoices(
    project_id: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List a project's invoices, recurring periods in month order."""
    invoices = await ledger.list_invoices(db, project_id)
    page = invoices[offset:offset + limit]
    return PaginatedResponse(
        items=[InvoiceOut.model_validate(i) for i in page],
        total=len(invoices),
        limit=limit,
        offset=offset,
    )


# ── POST /api/projects/{project_id}/invoices ─────────────────

@project_router.post(
    "/{project_id}/invoices",
    response_model=InvoiceOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_project_invoice(
    project_id: str,
    body: InvoiceCreate,
    db: AsyncSession = Depends(get_db),
):
    """Create an advance, implementation or one-off recurring invoice."""
    invoice = await ledger.create_invoice(db, project_id, **body.model_dump())
    return InvoiceOut.model_validate(invoice)


# ── POST /api/projects/{project_id}/invoices/generate ────────

@project_router.post("/{project_id}/invoices/generate", response_model=GenerateResult)
async def generate_project_invoices(
    project_id: str,
    body: GenerateRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Create any missing recurring invoices from the project's active deal."""
    deal = await get_project_deal(db, project_id)
    up_to_month = first_of_month(body.up_to_month) if body and body.up_to_month else default_up_to_month()
    created = await ledger.generate_recurring_invoices(db, project_id, deal_terms(deal), up_to_month)
    return GenerateResult(project_id=project_id, up_to_month=up_to_month, created=created)


# ── GET /api/projects/{project_id}/invoices/summary ──────────

@project_router.get("/{project_id}/invoices/summary", response_model=BillingSummaryOut)
async def project_billing_summary(
    project_id: str,
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Billed / paid / pending totals and tax owed for one project."""
    invoices = await ledger.list_invoices(db, project_id)
    return BillingSummaryOut.model_validate(summarize(invoices, as_of=as_of))


# ── GET /api/projects/{project_id}/invoices/export ───────────

@project_router.get("/{project_id}/invoices/export")
async def export_project_invoices(
    project_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Flat CSV report of the project's invoices."""
    invoices = await ledger.list_invoices(db, project_id)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=REPORT_COLUMNS)
    writer.writeheader()
    writer.writerows(report_rows(invoices))
    buffer.seek(0)

    return StreamingResponse(
        iter([buffer.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="invoices-{project_id}.csv"'},
    )


# ── GET /api/invoices/summary ────────────────────────────────

@router.get("/summary", response_model=BillingSummaryOut)
async def multi_project_summary(
    project_ids: list[str] = Query(...),
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Billing summary across several projects (e.g. every project of a client)."""
    invoices = await InvoiceStore(db).find_for_projects(project_ids)
    return BillingSummaryOut.model_validate(summarize(invoices, as_of=as_of))


# ── GET /api/invoices/{invoice_id} ───────────────────────────

@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(
    invoice_id: str,
    db: AsyncSession = Depends(get_db),
):
    invoice = await ledger.get_invoice(db, invoice_id)
    return InvoiceOut.model_validate(invoice)


# ── PATCH /api/invoices/{invoice_id} ─────────────────────────

@router.patch("/{invoice_id}", response_model=InvoiceOut)
async def update_invoice(
    invoice_id: str,
    body: InvoiceUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Edit an invoice.  Paid invoices only accept non-monetary edits."""
    invoice = await ledger.update_invoice(db, invoice_id, body.model_dump(exclude_unset=True))
    return InvoiceOut.model_validate(invoice)


# ── DELETE /api/invoices/{invoice_id} ────────────────────────

@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(
    invoice_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Delete an invoice that has not been paid."""
    await ledger.delete_invoice(db, invoice_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── POST /api/invoices/{invoice_id}/invoiced ─────────────────

@router.post("/{invoice_id}/invoiced", response_model=InvoiceOut)
async def mark_invoice_invoiced(
    invoice_id: str,
    body: MarkInvoicedRequest,
    db: AsyncSession = Depends(get_db),
):
    invoice = await ledger.mark_invoiced(
        db, invoice_id,
        invoice_number=body.invoice_number,
        document_ref=body.document_ref,
    )
    return InvoiceOut.model_validate(invoice)


# ── POST /api/invoices/{invoice_id}/paid ─────────────────────

@router.post("/{invoice_id}/paid", response_model=InvoiceOut)
async def mark_invoice_paid(
    invoice_id: str,
    body: MarkPaidRequest,
    db: AsyncSession = Depends(get_db),
):
    invoice = await ledger.mark_paid(
        db, invoice_id,
        paid_at=body.paid_at,
        amount_received=body.amount_received,
        retention_amount=body.retention_amount,
        proof_ref=body.payment_proof_ref,
    )
    return InvoiceOut.model_validate(invoice)
