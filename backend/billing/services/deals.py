"""Read access to deals, the contract collaborator behind recurring billing."""

from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import settings
from billing.middleware.exceptions import DealNotFound
from billing.models.deal import Deal, DealStatus
from billing.schemas.invoice import DealTerms
from billing.services.periods import add_months, first_of_month


async def get_project_deal(db: AsyncSession, project_id: str) -> Deal:
    """The project's active deal (most recent if several)."""
    result = await db.execute(
        select(Deal)
        .where(Deal.project_id == project_id, Deal.status == DealStatus.ACTIVE)
        .order_by(Deal.created_at.desc())
        .limit(1)
    )
    deal = result.scalar_one_or_none()
    if deal is None:
        raise DealNotFound(project_id)
    return deal


async def list_active_deals(db: AsyncSession) -> list[Deal]:
    result = await db.execute(
        select(Deal)
        .where(Deal.status == DealStatus.ACTIVE)
        .order_by(Deal.project_id, Deal.created_at.desc())
    )
    # One deal per project: the newest active one
    seen: set[str] = set()
    deals = []
    for deal in result.scalars().all():
        if deal.project_id in seen:
            continue
        seen.add(deal.project_id)
        deals.append(deal)
    return deals


def deal_terms(deal: Deal) -> DealTerms:
    return DealTerms.model_validate(deal)


def default_up_to_month(today: date | None = None) -> date:
    """Current month plus the configured lookahead."""
    today = today or date.today()
    return add_months(first_of_month(today), settings.generation_lookahead_months)
