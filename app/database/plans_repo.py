"""Repository layer for plan catalog database operations.

This module contains ONLY database access logic - no business rules.
"""

import uuid
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.plan import Plan
from app.models.subscription import Subscription


class PlanRepository:
    """Repository for plan database operations."""

    @staticmethod
    async def list_plans(db: AsyncSession, include_inactive: bool = False) -> list[Plan]:
        """Fetch plans ordered by monthly price, cheapest first."""
        query = select(Plan).order_by(Plan.monthly_price.asc(), Plan.name.asc())
        if not include_inactive:
            query = query.where(Plan.is_active.is_(True))
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def get_plan(db: AsyncSession, plan_id: uuid.UUID) -> Optional[Plan]:
        return await db.get(Plan, plan_id)

    @staticmethod
    async def find_conflicting(
        db: AsyncSession,
        name: Optional[str],
        code: Optional[str],
        exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[Plan]:
        """Return another plan already using ``name`` or ``code``, if any."""
        clauses = []
        if name is not None:
            clauses.append(Plan.name == name)
        if code is not None:
            clauses.append(Plan.code == code)
        if not clauses:
            return None
        query = select(Plan).where(or_(*clauses))
        if exclude_id is not None:
            query = query.where(Plan.id != exclude_id)
        result = await db.execute(query.limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    async def count_subscriptions(db: AsyncSession, plan_id: uuid.UUID) -> int:
        """
        Count subscriptions (any status) that reference a plan, either as
        their plan or as a scheduled downgrade target.
        """
        result = await db.execute(
            select(func.count(Subscription.id)).where(
                or_(Subscription.plan_id == plan_id, Subscription.scheduled_plan_id == plan_id)
            )
        )
        return int(result.scalar_one())

    @staticmethod
    async def add(db: AsyncSession, plan: Plan) -> Plan:
        db.add(plan)
        await db.flush()
        return plan

    @staticmethod
    async def delete(db: AsyncSession, plan: Plan) -> None:
        await db.delete(plan)
        await db.flush()
