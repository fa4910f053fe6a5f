"""Initial billing schema — deals and invoices.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-17

Run with:
    alembic upgrade head
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    op.create_table(
        "deals",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("recurring_amount_original", sa.Numeric(14, 2), nullable=False),
        sa.Column("implementation_fee_original", sa.Numeric(14, 2), server_default="0"),
        sa.Column("exchange_rate", sa.Numeric(14, 4)),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("billing_start_date", sa.Date()),
        sa.Column("first_period_covered", sa.Boolean(), server_default="false"),
        sa.Column("status", sa.String(20), server_default="ACTIVE"),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_deals_project_id", "deals", ["project_id"])
    op.create_index("ix_deals_status", "deals", ["status"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("invoice_type", sa.String(20), nullable=False),
        sa.Column("period_month", sa.Date()),
        sa.Column("concept", sa.String(255), nullable=False),
        # Amounts (invoice currency)
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False),
        sa.Column("has_tax", sa.Boolean(), server_default="false"),
        sa.Column("tax_amount", sa.Numeric(14, 2), server_default="0"),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("exchange_rate", sa.Numeric(14, 4)),
        sa.Column("total_in_base_currency", sa.Numeric(14, 2), nullable=False),
        # Document
        sa.Column("invoice_number", sa.String(50)),
        sa.Column("document_ref", sa.String(500)),
        sa.Column("is_collection_account", sa.Boolean(), server_default="false"),
        sa.Column("due_date", sa.Date()),
        sa.Column("status", sa.String(20), server_default="PENDING"),
        # Payment
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("amount_received", sa.Numeric(14, 2)),
        sa.Column("retention_amount", sa.Numeric(14, 2)),
        sa.Column("payment_proof_ref", sa.String(500)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_invoices_project_id", "invoices", ["project_id"])
    op.create_index("ix_invoices_status", "invoices", ["status"])
    # Backstop for concurrent recurring generation
    op.create_index(
        "uq_invoices_recurring_period",
        "invoices",
        ["project_id", "period_month"],
        unique=True,
        postgresql_where=sa.text("invoice_type = 'RECURRING'"),
    )


def downgrade() -> None:
    op.drop_index("uq_invoices_recurring_period", table_name="invoices")
    op.drop_index("ix_invoices_status", table_name="invoices")
    op.drop_index("ix_invoices_project_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_deals_status", table_name="deals")
    op.drop_index("ix_deals_project_id", table_name="deals")
    op.drop_table("deals")
