"""Service layer for the plan catalog.

Plans are read-mostly. Administrators create and edit them; subscriptions take
a snapshot at subscribe time so edits never reach existing grants, and a plan
cannot be deleted while any subscription references it.
"""

import json
import logging
import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.database.plans_repo import PlanRepository
from app.models.plan import Plan
from app.schemas.subscriptions import Plan as PlanSchema
from app.services import pricing
from app.services.activity_service import ActivityService
from app.utils.exceptions import PlanExistsException, PlanInUseException, PlanNotFoundException, ValidationException

logger = logging.getLogger(__name__)


def _discount_for(monthly_price: Decimal) -> Decimal:
    if Decimal(monthly_price) == 0:
        return Decimal("0.00")
    return pricing.to_money(settings.YEARLY_DISCOUNT_RATE)


def _validate_token_limit(token_limit: Optional[int]) -> None:
    if token_limit is not None and token_limit < 0:
        raise ValidationException("Token limit must be a non-negative integer or null for unlimited")


class PlanCatalogService:
    """Service for plan catalog business logic."""

    @staticmethod
    def yearly_price(plan: Plan) -> Optional[Decimal]:
        return pricing.yearly_price(plan.monthly_price, plan.yearly_discount_rate)

    @staticmethod
    def to_schema(plan: Plan) -> PlanSchema:
        yearly = PlanCatalogService.yearly_price(plan)
        return PlanSchema(
            id=str(plan.id),
            code=plan.code,
            name=plan.name,
            monthlyPrice=float(plan.monthly_price),
            yearlyPrice=float(yearly) if yearly is not None else None,
            yearlyDiscountRate=float(plan.yearly_discount_rate),
            tokenLimit=plan.token_limit,
            unlimited=plan.is_unlimited,
            features=plan.feature_list,
            isActive=plan.is_active,
        )

    @staticmethod
    async def list_plans(db: AsyncSession, include_inactive: bool = False) -> list[Plan]:
        return await PlanRepository.list_plans(db, include_inactive=include_inactive)

    @staticmethod
    async def get_plan(db: AsyncSession, plan_id: uuid.UUID) -> Plan:
        plan = await PlanRepository.get_plan(db, plan_id)
        if plan is None:
            raise PlanNotFoundException(details={"planId": str(plan_id)})
        return plan

    @staticmethod
    async def create_plan(
        db: AsyncSession,
        code: str,
        name: str,
        monthly_price: Decimal,
        token_limit: Optional[int],
        features: list[str],
        actor_id: Optional[uuid.UUID] = None,
    ) -> Plan:
        """Publish a new plan. Names and codes are unique across the catalog."""
        name = name.strip()
        if not name:
            raise ValidationException("Plan name is required")
        monthly_price = pricing.to_money(monthly_price)
        if monthly_price < 0:
            raise ValidationException("Price must be zero or positive")
        _validate_token_limit(token_limit)

        if await PlanRepository.find_conflicting(db, name=name, code=code):
            raise PlanExistsException()

        plan = Plan(
            id=uuid.uuid4(),
            code=code,
            name=name,
            monthly_price=monthly_price,
            token_limit=token_limit,
            features=json.dumps(features),
            yearly_discount_rate=_discount_for(monthly_price),
            is_active=True,
            created_by=actor_id,
        )
        await PlanRepository.add(db, plan)
        ActivityService.log_activity(
            db, "plan.created", user_id=actor_id, target_type="plan", target_id=plan.id,
            metadata={"code": code, "monthlyPrice": str(monthly_price), "tokenLimit": token_limit},
        )
        await db.commit()
        logger.info("Created plan %s (%s)", plan.code, plan.id)
        return plan

    @staticmethod
    async def update_plan(
        db: AsyncSession,
        plan_id: uuid.UUID,
        changes: dict[str, Any],
        actor_id: Optional[uuid.UUID] = None,
    ) -> Plan:
        """
        Apply a partial update to a plan.

        ``changes`` only holds the fields the caller sent; ``token_limit=None``
        switches the plan to unlimited. Existing subscriptions keep the
        values they were granted.
        """
        plan = await PlanCatalogService.get_plan(db, plan_id)

        if "name" in changes and changes["name"] is not None:
            name = changes["name"].strip()
            if not name:
                raise ValidationException("Plan name is required")
            if await PlanRepository.find_conflicting(db, name=name, code=None, exclude_id=plan.id):
                raise PlanExistsException()
            plan.name = name

        if "monthly_price" in changes and changes["monthly_price"] is not None:
            monthly_price = pricing.to_money(changes["monthly_price"])
            if monthly_price < 0:
                raise ValidationException("Price must be zero or positive")
            plan.monthly_price = monthly_price
            plan.yearly_discount_rate = _discount_for(monthly_price)

        if "token_limit" in changes:
            _validate_token_limit(changes["token_limit"])
            plan.token_limit = changes["token_limit"]

        if "features" in changes and changes["features"] is not None:
            plan.features = json.dumps(changes["features"])

        if "is_active" in changes and changes["is_active"] is not None:
            plan.is_active = bool(changes["is_active"])

        plan.updated_by = actor_id
        ActivityService.log_activity(
            db, "plan.updated", user_id=actor_id, target_type="plan", target_id=plan.id,
            metadata={key: str(value) for key, value in changes.items()},
        )
        await db.commit()
        await db.refresh(plan)
        logger.info("Updated plan %s fields=%s", plan.id, sorted(changes))
        return plan

    @staticmethod
    async def delete_plan(db: AsyncSession, plan_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> None:
        """Delete a plan nobody references."""
        plan = await PlanCatalogService.get_plan(db, plan_id)
        in_use = await PlanRepository.count_subscriptions(db, plan.id)
        if in_use > 0:
            raise PlanInUseException(details={"planId": str(plan.id), "subscriptions": in_use})

        await PlanRepository.delete(db, plan)
        ActivityService.log_activity(
            db, "plan.deleted", user_id=actor_id, target_type="plan", target_id=plan_id,
            metadata={"code": plan.code},
        )
        await db.commit()
        logger.info("Deleted plan %s", plan_id)
