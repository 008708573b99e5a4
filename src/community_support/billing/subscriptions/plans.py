"""
Active support plan lookup.
"""

from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from community_support.billing.subscriptions.models import SupportPlan


@dataclass(frozen=True)
class ActivePlan:
    """Read-only view of the plan a member subscribes under."""

    id: int
    community_id: int
    name: str
    description: str | None
    amount_minor: int
    currency: str
    is_active: bool = True


class PlanDirectory(Protocol):
    async def get_active_plan(self, community_id: int) -> ActivePlan | None: ...


class SqlPlanDirectory:
    """PlanDirectory reading the support_plans table."""

    def __init__(self, db_session: AsyncSession) -> None:
        self.db = db_session

    async def get_active_plan(self, community_id: int) -> ActivePlan | None:
        result = await self.db.execute(
            select(SupportPlan).where(
                SupportPlan.community_id == community_id,
                SupportPlan.is_active.is_(True),
            )
        )
        plan = result.scalar_one_or_none()
        if plan is None:
            return None
        return ActivePlan(
            id=plan.id,
            community_id=plan.community_id,
            name=plan.name,
            description=plan.description,
            amount_minor=plan.monthly_price_minor,
            currency=plan.currency,
            is_active=plan.is_active,
        )


__all__ = ["ActivePlan", "PlanDirectory", "SqlPlanDirectory"]
