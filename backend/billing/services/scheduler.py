"""Background task scheduler — tops up recurring invoices once a day.

Uses FastAPI's lifespan context to start/stop an asyncio background loop
that fires once per day at the configured hour.  Each deal is generated in
its own transaction, so one failing project never blocks the rest; a failed
project is simply picked up again on the next run.

Configuration (via .env):
    SCHEDULER_ENABLED=true
    GENERATION_HOUR=2                 (02:00 UTC daily)
    GENERATION_LOOKAHEAD_MONTHS=1     (bill up to next month)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone

from fastapi import FastAPI

from billing.config import settings
from billing.database import async_session
from billing.services.deals import deal_terms, default_up_to_month, list_active_deals
from billing.services.ledger import generate_recurring_invoices

logger = logging.getLogger("billing.scheduler")


async def _generate_for_project(project_id: str, terms, up_to_month: date) -> int | None:
    """Run generation for a single project in its own transaction."""
    try:
        async with async_session() as db:
            try:
                created = await generate_recurring_invoices(db, project_id, terms, up_to_month)
                await db.commit()
                return created
            except Exception:
                await db.rollback()
                raise
    except Exception:
        logger.exception("Recurring generation failed for project %s", project_id)
        return None


async def run_recurring_generation(up_to_month: date | None = None) -> dict:
    """Generate recurring invoices for every active deal."""
    up_to_month = up_to_month or default_up_to_month()
    logger.info("Starting recurring generation up to %s", up_to_month)

    async with async_session() as db:
        deals = [(d.project_id, deal_terms(d)) for d in await list_active_deals(db)]

    logger.info("Found %d active deals", len(deals))

    created_total = 0
    failed = []
    for project_id, terms in deals:
        created = await _generate_for_project(project_id, terms, up_to_month)
        if created is None:
            failed.append(project_id)
            continue
        created_total += created

    logger.info(
        "Recurring generation complete: %d invoice(s) created, %d project(s) failed",
        created_total, len(failed),
    )
    return {
        "up_to_month": up_to_month.isoformat(),
        "projects": len(deals),
        "created": created_total,
        "failed": failed,
    }


def _seconds_until(target_hour: int, now: datetime) -> float:
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def _scheduler_loop() -> None:
    """Sleep loop that fires recurring generation once per day."""
    while True:
        wait_seconds = _seconds_until(settings.generation_hour, datetime.now(timezone.utc))
        logger.info("Next recurring generation in %.0f seconds", wait_seconds)

        await asyncio.sleep(wait_seconds)

        try:
            await run_recurring_generation()
        except Exception:
            logger.exception("Unhandled error in recurring generation")

        # Small buffer to avoid running twice in the same minute
        await asyncio.sleep(60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: start the scheduler on startup, cancel on shutdown."""
    if not settings.scheduler_enabled:
        yield
        return

    task = asyncio.create_task(_scheduler_loop())
    logger.info("Recurring generation scheduler started")
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Recurring generation scheduler stopped")
