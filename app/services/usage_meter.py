"""Token quota metering for subscriptions.

Consumption is only allowed while a subscription is entitled (active or
pending_cancellation). The counter is bumped by a single guarded UPDATE so it
never passes ``token_limit``; a refused request leaves usage untouched. Every
movement of the counter is mirrored by a ``UsageEvent`` row.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.locks import user_lock
from app.database.plans_repo import PlanRepository
from app.database.subscription_repo import SubscriptionRepository
from app.models.subscription import Subscription
from app.models.subscription_enums import UsageSource
from app.schemas.subscriptions import Usage, UsageAudit
from app.services.activity_service import ActivityService
from app.services.subscription_service import SubscriptionService
from app.utils.exceptions import (
    NotActiveException,
    NotFoundException,
    PlanNotFoundException,
    QuotaExceededException,
    ValidationException,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


class UsageMeter:
    """Service for token consumption and quota administration."""

    @staticmethod
    def to_usage(subscription: Subscription) -> Usage:
        return Usage(
            subscriptionId=str(subscription.id),
            status=subscription.status,
            tokenUsage=subscription.token_usage,
            tokenLimit=subscription.token_limit,
            remainingTokens=subscription.remaining_tokens,
            unlimited=subscription.is_unlimited,
        )

    @staticmethod
    async def consume(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Record ``amount`` tokens against a subscription.

        Raises:
            ValidationException: amount is not a positive integer
            NotActiveException: subscription is pending or terminal
            QuotaExceededException: usage + amount would exceed the limit
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationException("Amount must be a positive integer", details={"amount": amount})

        now = now or utcnow()
        owner_id = await SubscriptionRepository.get_owner_id(db, subscription_id)
        if owner_id is None:
            raise NotFoundException("Subscription not found", details={"subscriptionId": str(subscription_id)})

        async with user_lock(owner_id):

            async def operation() -> Subscription:
                subscription = await SubscriptionRepository.get_subscription(db, subscription_id, for_update=True)
                await SubscriptionService.refresh_status(db, subscription, now)
                if not subscription.status.is_entitled:
                    raise NotActiveException(
                        details={"subscriptionId": str(subscription_id), "status": subscription.status.value}
                    )

                usage, limit = subscription.token_usage, subscription.token_limit
                if not await SubscriptionRepository.increment_usage(db, subscription.id, amount):
                    # The guarded UPDATE matched nothing; end the transaction holding the row lock
                    await db.commit()
                    logger.info(
                        "Quota exceeded for subscription %s: %s + %s > %s",
                        subscription_id,
                        usage,
                        amount,
                        limit,
                    )
                    raise QuotaExceededException(
                        details={"tokenUsage": usage, "tokenLimit": limit, "requested": amount}
                    )

                await SubscriptionRepository.add_usage_event(db, subscription_id, amount, UsageSource.CONSUME)
                await db.commit()
                await db.refresh(subscription)
                return subscription

            return await SubscriptionService.run_with_retry(db, operation, "consume")

    @staticmethod
    async def consume_for_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Consume against the user's current subscription."""
        now = now or utcnow()
        current = await SubscriptionService.get_current(db, user_id, now)
        if current is None:
            raise NotFoundException("No current subscription")
        return await UsageMeter.consume(db, current.id, amount, now)

    @staticmethod
    async def adjust_usage(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        delta: int,
        actor_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Admin correction of a subscription's counter.

        The result is clamped to ``[0, token_limit]``; the event records the
        delta that was actually applied.
        """
        now = now or utcnow()
        owner_id = await SubscriptionRepository.get_owner_id(db, subscription_id)
        if owner_id is None:
            raise NotFoundException("Subscription not found", details={"subscriptionId": str(subscription_id)})

        async with user_lock(owner_id):

            async def operation() -> Subscription:
                subscription = await SubscriptionRepository.get_subscription(db, subscription_id, for_update=True)
                await SubscriptionService.refresh_status(db, subscription, now)
                if not subscription.status.is_entitled:
                    raise NotActiveException(
                        details={"subscriptionId": str(subscription_id), "status": subscription.status.value}
                    )

                target = max(subscription.token_usage + delta, 0)
                if subscription.token_limit is not None:
                    target = min(target, subscription.token_limit)
                applied = target - subscription.token_usage
                if applied == 0:
                    return subscription

                subscription.token_usage = target
                await SubscriptionRepository.add_usage_event(
                    db, subscription.id, applied, UsageSource.ADMIN_ADJUST, actor_id
                )
                ActivityService.log_activity(
                    db,
                    "usage.adjusted",
                    user_id=actor_id,
                    target_type="subscription",
                    target_id=subscription.id,
                    metadata={"requested": delta, "applied": applied, "tokenUsage": target},
                )
                await db.commit()
                return subscription

            return await SubscriptionService.run_with_retry(db, operation, "adjust_usage")

    @staticmethod
    async def reset_plan_usage(
        db: AsyncSession,
        plan_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
    ) -> int:
        """Zero the counters of every entitled subscription on a plan."""
        plan = await PlanRepository.get_plan(db, plan_id)
        if plan is None:
            raise PlanNotFoundException(details={"planId": str(plan_id)})

        async def operation() -> int:
            count = 0
            for subscription in await SubscriptionRepository.list_current_for_plan(db, plan_id):
                if subscription.token_usage == 0:
                    continue
                await SubscriptionRepository.add_usage_event(
                    db, subscription.id, -subscription.token_usage, UsageSource.PLAN_RESET, actor_id
                )
                subscription.token_usage = 0
                count += 1
            ActivityService.log_activity(
                db,
                "usage.plan_reset",
                user_id=actor_id,
                target_type="plan",
                target_id=plan_id,
                metadata={"subscriptions": count},
            )
            await db.commit()
            return count

        count = await SubscriptionService.run_with_retry(db, operation, "reset_plan_usage")
        logger.info("Reset token usage of %s subscriptions on plan %s", count, plan.code)
        return count

    @staticmethod
    async def audit(db: AsyncSession, subscription_id: uuid.UUID) -> UsageAudit:
        """Compare the counter with the sum of its usage events."""
        subscription = await SubscriptionService.get_subscription(db, subscription_id)
        await db.refresh(subscription)
        total = await SubscriptionRepository.sum_usage_events(db, subscription_id)
        return UsageAudit(
            subscriptionId=str(subscription_id),
            tokenUsage=subscription.token_usage,
            eventTotal=total,
            consistent=total == subscription.token_usage,
        )
