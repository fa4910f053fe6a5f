"""Management CLI for recurring billing.

Usage:
    python -m billing.cli generate [YYYY-MM]   # Top up recurring invoices for all active deals
    python -m billing.cli list-deals           # Show active deals and their billing terms
"""

import asyncio
import sys
from datetime import date

from sqlalchemy import create_engine, select

from billing.config import settings
from billing.models.deal import Deal, DealStatus


def _parse_month(value: str) -> date:
    year, month = value.split("-")[:2]
    return date(int(year), int(month), 1)


def generate(up_to: str | None = None):
    """Run recurring generation once, outside the scheduler."""
    from billing.services.scheduler import run_recurring_generation

    up_to_month = _parse_month(up_to) if up_to else None
    result = asyncio.run(run_recurring_generation(up_to_month))
    print(f"  Up to {result['up_to_month']}: {result['created']} invoice(s) "
          f"across {result['projects']} project(s)")
    for project_id in result["failed"]:
        print(f"  FAILED: {project_id}")
    if result["failed"]:
        sys.exit(1)


def list_deals():
    engine = create_engine(settings.database_url_sync)
    with engine.connect() as conn:
        rows = conn.execute(
            select(
                Deal.project_id, Deal.currency, Deal.recurring_amount_original,
                Deal.billing_start_date, Deal.start_date, Deal.first_period_covered,
            ).where(Deal.status == DealStatus.ACTIVE)
        ).all()
    for r in rows:
        start = r.billing_start_date or r.start_date
        covered = " (first month covered)" if r.first_period_covered else ""
        print(f"  {r.project_id}  {r.currency} {r.recurring_amount_original}/month from {start}{covered}")
    print(f"\n{len(rows)} active deal(s)")


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "generate":
        generate(sys.argv[2] if len(sys.argv) > 2 else None)
    elif cmd == "list-deals":
        list_deals()
    else:
        print("Usage: python -m billing.cli [generate [YYYY-MM]|list-deals]")
