"""Service layer for subscription business logic.

This module contains ALL lifecycle rules for subscriptions.
It orchestrates repository calls, enforces transitions and formats API data.

Key Concepts:
- Subscription: One ledger row per (user, coverage period). Rows are never
  deleted; ``expired`` and ``cancelled`` are terminal.
- Current subscription: The single row of a user in pending, active or
  pending_cancellation. A partial unique index enforces "at most one".
- Confirmation: A provider transaction applied to a pending subscription.
  The (subscription, transaction) pair is unique, replays are no-ops.
- Lazy transitions: Expiry and pending timeouts are applied and persisted the
  first time a row is observed past its deadline, no background job needed.

Transitions:
    none -> pending                      subscribe
    pending -> active                    confirm_payment
    pending -> cancelled                 cancel_pending / resubscribe / timeout
    active -> pending_cancellation       cancel
    active -> cancelled                  upgrade (replaced by a new pending row)
    active | pending_cancellation -> expired   end_date reached (plus the
                                               renewal grace when auto-renewing)

Concurrency:
- Mutations of a user's rows run under a per-user in-process lock.
- Rows are re-read FOR UPDATE inside the lock.
- ``version_id`` gives optimistic locking across processes; conflicts are
  retried a few times before surfacing CONCURRENT_MODIFICATION.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.locks import user_lock
from app.database.plans_repo import PlanRepository
from app.database.subscription_repo import SubscriptionRepository
from app.models.plan import Plan
from app.models.subscription import PaymentConfirmationRecord, Subscription
from app.models.subscription_enums import (
    BillingPeriod,
    CancellationReason,
    ConfirmationKind,
    SubscriptionStatus,
    UsageSource,
)
from app.schemas.subscriptions import Subscription as SubscriptionSchema
from app.services import pricing
from app.services.activity_service import ActivityService
from app.services.payment_gateway import PaymentConfirmation, PaymentGateway, PaymentRequest
from app.utils.exceptions import (
    AlreadySubscribedException,
    ConcurrentModificationException,
    DowngradeNotAllowedException,
    NotActiveException,
    NotFoundException,
    PaymentFailedException,
    PlanNotFoundException,
    SubscriptionNotPendingException,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

FREE_PROVIDER = "free"


@dataclass
class SubscribeResult:
    subscription: Subscription
    deferred: bool = False
    replaced_subscription_id: Optional[uuid.UUID] = None


@dataclass
class ConfirmationOutcome:
    subscription: Subscription
    replayed: bool = False


class SubscriptionService:
    """Service for subscription lifecycle business logic."""

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    @staticmethod
    def to_schema(subscription: Subscription) -> SubscriptionSchema:
        return SubscriptionSchema(
            id=str(subscription.id),
            userId=str(subscription.user_id),
            planId=str(subscription.plan_id),
            planName=subscription.plan_name,
            billingPeriod=subscription.billing_period,
            status=subscription.status,
            startDate=subscription.start_date,
            endDate=subscription.end_date,
            autoRenew=subscription.auto_renew,
            tokenUsage=subscription.token_usage,
            tokenLimit=subscription.token_limit,
            unlimited=subscription.is_unlimited,
            remainingTokens=subscription.remaining_tokens,
            features=subscription.feature_list,
            periodPrice=float(subscription.period_price),
            creditAmount=float(subscription.credit_amount),
            amountDue=float(subscription.amount_due),
            paymentProvider=subscription.payment_provider,
            cancellationReason=subscription.cancellation_reason.value if subscription.cancellation_reason else None,
            scheduledPlanId=str(subscription.scheduled_plan_id) if subscription.scheduled_plan_id else None,
            createdAt=subscription.created_date,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def run_with_retry(db: AsyncSession, operation: Callable[[], Awaitable[T]], label: str) -> T:
        """Run ``operation``, retrying when an optimistic version check fails."""
        attempts = settings.OPTIMISTIC_RETRY_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except StaleDataError:
                await db.rollback()
                logger.warning("Concurrent update during %s (attempt %s/%s)", label, attempt, attempts)
        raise ConcurrentModificationException(details={"operation": label})

    @staticmethod
    def _new_pending(
        user_id: uuid.UUID,
        plan: Plan,
        billing_period: BillingPeriod,
        now: datetime,
        credit: Decimal = pricing.ZERO,
        replaces_id: Optional[uuid.UUID] = None,
    ) -> Subscription:
        price = pricing.period_price(plan.monthly_price, plan.yearly_discount_rate, billing_period)
        credit = min(pricing.to_money(credit), price)
        return Subscription(
            id=uuid.uuid4(),
            user_id=user_id,
            plan_id=plan.id,
            plan_name=plan.name,
            billing_period=billing_period,
            status=SubscriptionStatus.PENDING,
            auto_renew=False,
            token_usage=0,
            token_limit=plan.token_limit,
            features=plan.features,
            monthly_price=plan.monthly_price,
            period_price=price,
            credit_amount=credit,
            amount_due=pricing.first_charge(price, credit),
            replaces_subscription_id=replaces_id,
            created_by=user_id,
            created_date=now,
        )

    @staticmethod
    def _mark_cancelled(subscription: Subscription, reason: CancellationReason, now: datetime) -> None:
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.auto_renew = False
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason

    @staticmethod
    def _activate(
        db: AsyncSession,
        subscription: Subscription,
        confirmation: PaymentConfirmation,
        billing_period: BillingPeriod,
        now: datetime,
    ) -> PaymentConfirmationRecord:
        """Move a pending row to active and build its dedupe record."""
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.billing_period = billing_period
        subscription.start_date = now
        subscription.end_date = pricing.period_end(now, billing_period)
        subscription.auto_renew = True
        subscription.payment_provider = confirmation.provider
        subscription.provider_transaction_id = confirmation.provider_transaction_id
        record = PaymentConfirmationRecord(
            subscription_id=subscription.id,
            provider=confirmation.provider,
            provider_transaction_id=confirmation.provider_transaction_id,
            provider_reference=confirmation.provider_reference,
            billing_period=billing_period,
            kind=ConfirmationKind.ACTIVATION,
            amount=subscription.amount_due,
            created_by=subscription.user_id,
        )
        ActivityService.log_activity(
            db,
            "subscription.activated",
            user_id=subscription.user_id,
            target_type="subscription",
            target_id=subscription.id,
            metadata={
                "provider": confirmation.provider,
                "providerTransactionId": confirmation.provider_transaction_id,
                "billingPeriod": billing_period.value,
                "endDate": subscription.end_date,
                "amount": subscription.amount_due,
            },
        )
        return record

    @staticmethod
    async def _reprice(
        db: AsyncSession, subscription: Subscription, billing_period: BillingPeriod
    ) -> tuple[Decimal, Decimal, Decimal]:
        """Monthly price, period price and amount due if ``subscription`` were billed for ``billing_period``."""
        if billing_period == subscription.billing_period:
            return subscription.monthly_price, subscription.period_price, subscription.amount_due
        plan = await PlanRepository.get_plan(db, subscription.plan_id)
        if plan is None:
            raise PlanNotFoundException(details={"planId": str(subscription.plan_id)})
        price = pricing.period_price(plan.monthly_price, plan.yearly_discount_rate, billing_period)
        return plan.monthly_price, price, pricing.first_charge(price, subscription.credit_amount)

    @staticmethod
    async def _start_scheduled_plan(db: AsyncSession, expired: Subscription, now: datetime) -> Optional[Subscription]:
        """Open the deferred downgrade of an expired subscription as a new pending row."""
        plan = await PlanRepository.get_plan(db, expired.scheduled_plan_id)
        if plan is None or not plan.is_active:
            logger.warning(
                "Scheduled plan %s for subscription %s is no longer offered",
                expired.scheduled_plan_id,
                expired.id,
            )
            return None

        billing_period = expired.scheduled_billing_period or BillingPeriod.MONTHLY
        if plan.is_free:
            billing_period = BillingPeriod.MONTHLY
        successor = SubscriptionService._new_pending(expired.user_id, plan, billing_period, now, replaces_id=expired.id)
        await SubscriptionRepository.add(db, successor)
        ActivityService.log_activity(
            db,
            "subscription.downgrade_started",
            user_id=expired.user_id,
            target_type="subscription",
            target_id=successor.id,
            metadata={"previousSubscriptionId": expired.id, "planId": plan.id},
        )

        if successor.amount_due == 0:
            confirmation = PaymentConfirmation(FREE_PROVIDER, f"free-{successor.id}", billing_period)
            record = SubscriptionService._activate(db, successor, confirmation, billing_period, now)
            await SubscriptionRepository.add_confirmation(db, record)
        return successor

    @staticmethod
    def _lapses_at(subscription: Subscription) -> Optional[datetime]:
        """
        Instant an entitled subscription expires if nothing extends it.

        An auto-renewing active subscription keeps RENEWAL_GRACE_MINUTES past
        its end date for the provider's renewal notification to arrive.
        """
        if subscription.end_date is None:
            return None
        if subscription.status == SubscriptionStatus.ACTIVE and subscription.auto_renew:
            return subscription.end_date + timedelta(minutes=settings.RENEWAL_GRACE_MINUTES)
        return subscription.end_date

    @staticmethod
    async def _apply_lazy_transitions(db: AsyncSession, subscription: Subscription, now: datetime) -> Optional[Subscription]:
        """
        Apply deadline-driven transitions to ``subscription`` (not committed).

        - pending older than PENDING_TIMEOUT_MINUTES -> cancelled
        - active / pending_cancellation past ``_lapses_at`` -> expired

        Returns:
            The pending successor opened by a deferred downgrade, if any
        """
        timeout = settings.PENDING_TIMEOUT_MINUTES
        if (
            subscription.status == SubscriptionStatus.PENDING
            and timeout > 0
            and subscription.created_date <= now - timedelta(minutes=timeout)
        ):
            SubscriptionService._mark_cancelled(subscription, CancellationReason.PENDING_TIMEOUT, now)
            ActivityService.log_activity(
                db,
                "subscription.pending_timeout",
                user_id=subscription.user_id,
                target_type="subscription",
                target_id=subscription.id,
            )
            return None

        lapses_at = SubscriptionService._lapses_at(subscription)
        if subscription.status.is_entitled and lapses_at is not None and now >= lapses_at:
            subscription.status = SubscriptionStatus.EXPIRED
            subscription.auto_renew = False
            ActivityService.log_activity(
                db,
                "subscription.expired",
                user_id=subscription.user_id,
                target_type="subscription",
                target_id=subscription.id,
                metadata={"endDate": subscription.end_date},
            )
            if subscription.scheduled_plan_id is not None:
                # Free the single-current slot before opening the successor
                await db.flush()
                return await SubscriptionService._start_scheduled_plan(db, subscription, now)
        return None

    @staticmethod
    async def refresh_status(db: AsyncSession, subscription: Subscription, now: datetime) -> Optional[Subscription]:
        """
        Apply and persist lazy transitions on a locked row.

        Returns:
            The user's current subscription after observation: the row itself,
            a successor opened by a deferred downgrade, or None
        """
        before = subscription.status
        successor = await SubscriptionService._apply_lazy_transitions(db, subscription, now)
        if subscription.status != before:
            await db.commit()
        if successor is not None:
            return successor
        return subscription if subscription.status.is_current else None

    @staticmethod
    async def _get_owner(db: AsyncSession, subscription_id: uuid.UUID) -> uuid.UUID:
        owner_id = await SubscriptionRepository.get_owner_id(db, subscription_id)
        if owner_id is None:
            raise NotFoundException("Subscription not found", details={"subscriptionId": str(subscription_id)})
        return owner_id

    @staticmethod
    async def _load_locked(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription:
        subscription = await SubscriptionRepository.get_subscription(db, subscription_id, for_update=True)
        if subscription is None:
            raise NotFoundException("Subscription not found", details={"subscriptionId": str(subscription_id)})
        return subscription

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    async def get_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription:
        subscription = await SubscriptionRepository.get_subscription(db, subscription_id)
        if subscription is None:
            raise NotFoundException("Subscription not found", details={"subscriptionId": str(subscription_id)})
        return subscription

    @staticmethod
    async def get_current(db: AsyncSession, user_id: uuid.UUID, now: Optional[datetime] = None) -> Optional[Subscription]:
        """Current (pending / active / pending_cancellation) subscription of a user, if any."""
        now = now or utcnow()
        async with user_lock(user_id):

            async def operation() -> Optional[Subscription]:
                current = await SubscriptionRepository.get_current_for_user(db, user_id, for_update=True)
                if current is None:
                    return None
                return await SubscriptionService.refresh_status(db, current, now)

            return await SubscriptionService.run_with_retry(db, operation, "get_current")

    @staticmethod
    async def get_history(db: AsyncSession, user_id: uuid.UUID, now: Optional[datetime] = None) -> list[Subscription]:
        """Every subscription of a user, newest first, after lazy transitions."""
        await SubscriptionService.get_current(db, user_id, now)
        history = await SubscriptionRepository.list_for_user(db, user_id)
        if not history:
            raise NotFoundException("No subscriptions yet")
        return history

    # ------------------------------------------------------------------
    # none -> pending
    # ------------------------------------------------------------------

    @staticmethod
    async def subscribe(
        db: AsyncSession,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
        now: Optional[datetime] = None,
    ) -> SubscribeResult:
        """
        Open a pending subscription to a plan.

        Business Rules:
        - Unknown or withdrawn plan -> PLAN_NOT_FOUND
        - Yearly billing of a free plan -> VALIDATION_ERROR
        - Current pending row -> cancelled and replaced (a retry)
        - Current active / pending_cancellation row:
            * pricier plan -> upgrade: current row cancelled and the new
              pending row created in the same transaction, with an optional
              proration credit
            * cheaper or same price -> DOWNGRADE_NOT_ALLOWED, or a deferred
              switch at period end when DOWNGRADE_POLICY is "defer"
        - Losing the single-current race -> ALREADY_SUBSCRIBED
        """
        now = now or utcnow()
        plan = await PlanRepository.get_plan(db, plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFoundException(details={"planId": str(plan_id)})
        # Rejects yearly billing of free plans before touching any state
        pricing.period_price(plan.monthly_price, plan.yearly_discount_rate, billing_period)

        async with user_lock(user_id):

            async def operation() -> SubscribeResult:
                current = await SubscriptionRepository.get_current_for_user(db, user_id, for_update=True)
                if current is not None:
                    current = await SubscriptionService.refresh_status(db, current, now)

                credit = pricing.ZERO
                replaced_id: Optional[uuid.UUID] = None

                if current is not None and current.status == SubscriptionStatus.PENDING:
                    SubscriptionService._mark_cancelled(current, CancellationReason.ABANDONED, now)
                    ActivityService.log_activity(
                        db,
                        "subscription.abandoned",
                        user_id=user_id,
                        target_type="subscription",
                        target_id=current.id,
                    )
                    replaced_id = current.id
                elif current is not None:
                    if plan.id == current.plan_id or Decimal(plan.monthly_price) <= Decimal(current.monthly_price):
                        if settings.DOWNGRADE_POLICY == "defer" and plan.id != current.plan_id:
                            return await SubscriptionService._schedule_downgrade(db, current, plan, billing_period)
                        raise DowngradeNotAllowedException(
                            details={
                                "currentPlanId": str(current.plan_id),
                                "requestedPlanId": str(plan.id),
                            }
                        )

                    if settings.PRORATE_UPGRADES:
                        period_start = pricing.add_months(
                            current.end_date, -12 if current.billing_period == BillingPeriod.YEARLY else -1
                        )
                        if current.start_date is not None and current.start_date > period_start:
                            period_start = current.start_date
                        credit = pricing.upgrade_credit(current.amount_due, period_start, current.end_date, now)

                    SubscriptionService._mark_cancelled(current, CancellationReason.UPGRADE, now)
                    ActivityService.log_activity(
                        db,
                        "subscription.replaced",
                        user_id=user_id,
                        target_type="subscription",
                        target_id=current.id,
                        metadata={"newPlanId": plan.id, "credit": credit},
                    )
                    replaced_id = current.id

                subscription = SubscriptionService._new_pending(
                    user_id,
                    plan,
                    billing_period,
                    now,
                    credit=credit,
                    replaces_id=replaced_id,
                )
                try:
                    if replaced_id is not None:
                        # The replaced row must leave the current set before the insert
                        await db.flush()
                    await SubscriptionRepository.add(db, subscription)
                    ActivityService.log_activity(
                        db,
                        "subscription.subscribed",
                        user_id=user_id,
                        target_type="subscription",
                        target_id=subscription.id,
                        metadata={
                            "planId": plan.id,
                            "billingPeriod": billing_period.value,
                            "amountDue": subscription.amount_due,
                            "replaces": replaced_id,
                        },
                    )
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.info("Concurrent subscribe rejected for user %s", user_id)
                    raise AlreadySubscribedException()

                logger.info(
                    "User %s subscribed to plan %s (%s), subscription %s pending",
                    user_id,
                    plan.code,
                    billing_period.value,
                    subscription.id,
                )
                return SubscribeResult(subscription=subscription, replaced_subscription_id=replaced_id)

            return await SubscriptionService.run_with_retry(db, operation, "subscribe")

    @staticmethod
    async def _schedule_downgrade(
        db: AsyncSession,
        current: Subscription,
        plan: Plan,
        billing_period: BillingPeriod,
    ) -> SubscribeResult:
        """Keep the paid period and switch to ``plan`` when it ends."""
        if current.status == SubscriptionStatus.ACTIVE:
            current.status = SubscriptionStatus.PENDING_CANCELLATION
        current.auto_renew = False
        current.scheduled_plan_id = plan.id
        current.scheduled_billing_period = billing_period
        ActivityService.log_activity(
            db,
            "subscription.downgrade_scheduled",
            user_id=current.user_id,
            target_type="subscription",
            target_id=current.id,
            metadata={"planId": plan.id, "effectiveAt": current.end_date},
        )
        await db.commit()
        logger.info("Deferred downgrade of subscription %s to plan %s", current.id, plan.code)
        return SubscribeResult(subscription=current, deferred=True)

    # ------------------------------------------------------------------
    # pending -> active
    # ------------------------------------------------------------------

    @staticmethod
    async def confirm_payment(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        confirmation: PaymentConfirmation,
        now: Optional[datetime] = None,
    ) -> ConfirmationOutcome:
        """
        Apply a successful payment confirmation to a pending subscription.

        Replaying a (subscription, provider transaction) pair that was already
        applied returns the committed state without mutating anything.
        """
        now = now or utcnow()
        owner_id = await SubscriptionService._get_owner(db, subscription_id)

        async with user_lock(owner_id):
            return await SubscriptionService._apply_confirmation(db, subscription_id, confirmation, now)

    @staticmethod
    async def _apply_confirmation(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        confirmation: PaymentConfirmation,
        now: datetime,
    ) -> ConfirmationOutcome:
        """Body of ``confirm_payment``; the caller holds the owner's lock."""

        async def operation() -> ConfirmationOutcome:
            existing = await SubscriptionRepository.find_confirmation(
                db, subscription_id, confirmation.provider_transaction_id
            )
            subscription = await SubscriptionService._load_locked(db, subscription_id)
            if existing is not None:
                logger.info(
                    "Replayed confirmation %s for subscription %s",
                    confirmation.provider_transaction_id,
                    subscription_id,
                )
                return ConfirmationOutcome(subscription=subscription, replayed=True)

            if subscription.status != SubscriptionStatus.PENDING:
                raise SubscriptionNotPendingException(
                    details={"subscriptionId": str(subscription_id), "status": subscription.status.value}
                )

            billing_period = confirmation.billing_period or subscription.billing_period
            monthly_price, period_price, amount_due = await SubscriptionService._reprice(
                db, subscription, billing_period
            )
            subscription.monthly_price = monthly_price
            subscription.period_price = period_price
            subscription.amount_due = amount_due

            record = SubscriptionService._activate(db, subscription, confirmation, billing_period, now)
            try:
                await SubscriptionRepository.add_confirmation(db, record)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await SubscriptionRepository.find_confirmation(
                    db, subscription_id, confirmation.provider_transaction_id
                )
                if existing is None:
                    raise
                subscription = await SubscriptionService._load_locked(db, subscription_id)
                return ConfirmationOutcome(subscription=subscription, replayed=True)

            logger.info(
                "Subscription %s activated until %s via %s",
                subscription.id,
                subscription.end_date,
                confirmation.provider,
            )
            return ConfirmationOutcome(subscription=subscription)

        return await SubscriptionService.run_with_retry(db, operation, "confirm_payment")

    @staticmethod
    async def process_payment(
        db: AsyncSession,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        provider: str,
        provider_reference: Optional[str],
        gateway: PaymentGateway,
        duration: Optional[BillingPeriod] = None,
        now: Optional[datetime] = None,
    ) -> ConfirmationOutcome:
        """
        Obtain a confirmation from the gateway and apply it.

        Gateway failures and timeouts raise PAYMENT_FAILED and leave the
        subscription pending, so the payment can be retried.

        The owner's lock is held from the pending check until the confirmation
        is committed, so a double submit reaches the gateway once and the
        second request replays the first one's result.
        """
        now = now or utcnow()
        owner_id = await SubscriptionRepository.get_owner_id(db, subscription_id)
        if owner_id is None or owner_id != user_id:
            raise NotFoundException("Subscription not found", details={"subscriptionId": str(subscription_id)})

        async with user_lock(owner_id):
            subscription = await SubscriptionService._load_locked(db, subscription_id)

            if provider_reference:
                existing = await SubscriptionRepository.find_confirmation_by_reference(
                    db, subscription.id, provider_reference
                )
                if existing is not None:
                    logger.info("Replayed checkout %s for subscription %s", provider_reference, subscription.id)
                    return ConfirmationOutcome(subscription=subscription, replayed=True)

            if subscription.status != SubscriptionStatus.PENDING:
                raise SubscriptionNotPendingException(
                    details={"subscriptionId": str(subscription_id), "status": subscription.status.value}
                )

            billing_period = duration or subscription.billing_period
            _, _, amount_due = await SubscriptionService._reprice(db, subscription, billing_period)

            if amount_due == 0:
                confirmation = PaymentConfirmation(
                    FREE_PROVIDER,
                    provider_reference or f"free-{subscription.id}",
                    billing_period,
                )
                return await SubscriptionService._apply_confirmation(db, subscription.id, confirmation, now)

            request = PaymentRequest(
                subscription_id=str(subscription.id),
                provider=provider,
                provider_reference=provider_reference,
                amount=amount_due,
                currency=settings.CURRENCY,
                billing_period=billing_period,
            )
            try:
                result = await asyncio.wait_for(gateway.confirm(request), timeout=settings.PAYMENT_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                # Nothing was written; end the transaction holding the row lock
                await db.commit()
                logger.warning("Payment confirmation timed out for subscription %s", subscription_id)
                raise PaymentFailedException(
                    "Payment confirmation timed out; the subscription is still pending",
                    details={"subscriptionId": str(subscription_id), "reason": "timeout"},
                )

            if not result.success or not result.provider_transaction_id:
                await db.commit()
                logger.info("Payment declined for subscription %s: %s", subscription_id, result.failure_reason)
                raise PaymentFailedException(
                    result.failure_reason or "Payment was declined",
                    details={"subscriptionId": str(subscription_id)},
                )

            confirmation = PaymentConfirmation(
                provider,
                result.provider_transaction_id,
                billing_period,
                provider_reference=provider_reference,
            )
            return await SubscriptionService._apply_confirmation(db, subscription_id, confirmation, now)

    # ------------------------------------------------------------------
    # Renewal (webhook driven)
    # ------------------------------------------------------------------

    @staticmethod
    async def renew(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        confirmation: PaymentConfirmation,
        now: Optional[datetime] = None,
    ) -> ConfirmationOutcome:
        """
        Extend an auto-renewing active subscription by one period.

        The notification may arrive up to RENEWAL_GRACE_MINUTES after
        end_date; the new period still starts at the previous end_date.
        """
        now = now or utcnow()
        owner_id = await SubscriptionService._get_owner(db, subscription_id)

        async with user_lock(owner_id):

            async def operation() -> ConfirmationOutcome:
                existing = await SubscriptionRepository.find_confirmation(
                    db, subscription_id, confirmation.provider_transaction_id
                )
                subscription = await SubscriptionService._load_locked(db, subscription_id)
                if existing is not None:
                    return ConfirmationOutcome(subscription=subscription, replayed=True)

                lapses_at = SubscriptionService._lapses_at(subscription)
                renewable = (
                    subscription.status == SubscriptionStatus.ACTIVE
                    and subscription.auto_renew
                    and lapses_at is not None
                    and now < lapses_at
                )
                if not renewable:
                    await SubscriptionService.refresh_status(db, subscription, now)
                    raise NotActiveException(
                        "Only active auto-renewing subscriptions can be renewed",
                        details={"subscriptionId": str(subscription_id), "status": subscription.status.value},
                    )

                subscription.end_date = pricing.period_end(subscription.end_date, subscription.billing_period)
                subscription.credit_amount = pricing.ZERO
                subscription.amount_due = subscription.period_price
                subscription.payment_provider = confirmation.provider
                subscription.provider_transaction_id = confirmation.provider_transaction_id
                if subscription.token_usage:
                    await SubscriptionRepository.add_usage_event(
                        db, subscription.id, -subscription.token_usage, UsageSource.RENEWAL_RESET
                    )
                    subscription.token_usage = 0

                record = PaymentConfirmationRecord(
                    subscription_id=subscription.id,
                    provider=confirmation.provider,
                    provider_transaction_id=confirmation.provider_transaction_id,
                    billing_period=subscription.billing_period,
                    kind=ConfirmationKind.RENEWAL,
                    amount=subscription.period_price,
                    created_by=subscription.user_id,
                )
                ActivityService.log_activity(
                    db,
                    "subscription.renewed",
                    user_id=subscription.user_id,
                    target_type="subscription",
                    target_id=subscription.id,
                    metadata={"endDate": subscription.end_date, "providerTransactionId": confirmation.provider_transaction_id},
                )
                try:
                    await SubscriptionRepository.add_confirmation(db, record)
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    existing = await SubscriptionRepository.find_confirmation(
                        db, subscription_id, confirmation.provider_transaction_id
                    )
                    if existing is None:
                        raise
                    subscription = await SubscriptionService._load_locked(db, subscription_id)
                    return ConfirmationOutcome(subscription=subscription, replayed=True)

                logger.info("Subscription %s renewed until %s", subscription.id, subscription.end_date)
                return ConfirmationOutcome(subscription=subscription)

            return await SubscriptionService.run_with_retry(db, operation, "renew")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @staticmethod
    async def cancel(db: AsyncSession, subscription_id: uuid.UUID, now: Optional[datetime] = None) -> Subscription:
        """
        Stop auto-renewal of an active subscription.

        The end date is unchanged: quota and features stay available until
        the subscription expires.
        """
        now = now or utcnow()
        owner_id = await SubscriptionService._get_owner(db, subscription_id)

        async with user_lock(owner_id):

            async def operation() -> Subscription:
                subscription = await SubscriptionService._load_locked(db, subscription_id)
                await SubscriptionService.refresh_status(db, subscription, now)
                if subscription.status != SubscriptionStatus.ACTIVE:
                    raise NotActiveException(
                        details={"subscriptionId": str(subscription_id), "status": subscription.status.value}
                    )

                subscription.status = SubscriptionStatus.PENDING_CANCELLATION
                subscription.auto_renew = False
                ActivityService.log_activity(
                    db,
                    "subscription.cancellation_requested",
                    user_id=subscription.user_id,
                    target_type="subscription",
                    target_id=subscription.id,
                    metadata={"endDate": subscription.end_date},
                )
                await db.commit()
                logger.info("Subscription %s will end on %s", subscription.id, subscription.end_date)
                return subscription

            return await SubscriptionService.run_with_retry(db, operation, "cancel")

    @staticmethod
    async def cancel_pending(db: AsyncSession, subscription_id: uuid.UUID, now: Optional[datetime] = None) -> Subscription:
        """Abandon a subscribe attempt whose payment never arrived."""
        now = now or utcnow()
        owner_id = await SubscriptionService._get_owner(db, subscription_id)

        async with user_lock(owner_id):

            async def operation() -> Subscription:
                subscription = await SubscriptionService._load_locked(db, subscription_id)
                if subscription.status != SubscriptionStatus.PENDING:
                    raise SubscriptionNotPendingException(
                        details={"subscriptionId": str(subscription_id), "status": subscription.status.value}
                    )
                SubscriptionService._mark_cancelled(subscription, CancellationReason.ABANDONED, now)
                ActivityService.log_activity(
                    db,
                    "subscription.abandoned",
                    user_id=subscription.user_id,
                    target_type="subscription",
                    target_id=subscription.id,
                )
                await db.commit()
                return subscription

            return await SubscriptionService.run_with_retry(db, operation, "cancel_pending")

    @staticmethod
    async def cancel_current(db: AsyncSession, user_id: uuid.UUID, now: Optional[datetime] = None) -> Subscription:
        """Cancel whatever the user currently holds: abandon a pending row or stop an active one."""
        now = now or utcnow()
        current = await SubscriptionService.get_current(db, user_id, now)
        if current is None:
            raise NotFoundException("No current subscription")
        if current.status == SubscriptionStatus.PENDING:
            return await SubscriptionService.cancel_pending(db, current.id, now)
        return await SubscriptionService.cancel(db, current.id, now)

    # ------------------------------------------------------------------
    # Batch maintenance
    # ------------------------------------------------------------------

    @staticmethod
    async def expire_stale_pending(db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Cancel every pending subscription older than PENDING_TIMEOUT_MINUTES."""
        now = now or utcnow()
        timeout = settings.PENDING_TIMEOUT_MINUTES
        if timeout <= 0:
            return 0
        stale = await SubscriptionRepository.list_stale_pending(db, now - timedelta(minutes=timeout))
        user_ids = {subscription.user_id for subscription in stale}
        count = 0
        for user_id in user_ids:
            current = await SubscriptionRepository.get_current_for_user(db, user_id)
            was_pending = current is not None and current.status == SubscriptionStatus.PENDING
            after = await SubscriptionService.get_current(db, user_id, now)
            if was_pending and (after is None or after.id != current.id):
                count += 1
        logger.info("Cancelled %s stale pending subscriptions", count)
        return count

    @staticmethod
    async def expire_lapsed(db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Persist expiry of every entitled subscription past its end date."""
        now = now or utcnow()
        lapsed = [
            subscription
            for subscription in await SubscriptionRepository.list_lapsed(db, now)
            if now >= SubscriptionService._lapses_at(subscription)
        ]
        for user_id in {subscription.user_id for subscription in lapsed}:
            await SubscriptionService.get_current(db, user_id, now)
        logger.info("Expired %s lapsed subscriptions", len(lapsed))
        return len(lapsed)

    # ------------------------------------------------------------------
    # Provider callbacks
    # ------------------------------------------------------------------

    @staticmethod
    async def handle_payment_event(
        db: AsyncSession,
        event: str,
        subscription_id: uuid.UUID,
        confirmation: PaymentConfirmation,
        failure_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConfirmationOutcome:
        """
        Apply an asynchronous provider notification.

        - payment.succeeded: same as ``confirm_payment``
        - renewal.succeeded: same as ``renew``
        - payment.failed: recorded in the activity log, no state change
        """
        if event == "payment.succeeded":
            return await SubscriptionService.confirm_payment(db, subscription_id, confirmation, now)
        if event == "renewal.succeeded":
            return await SubscriptionService.renew(db, subscription_id, confirmation, now)

        subscription = await SubscriptionService.get_subscription(db, subscription_id)
        ActivityService.log_activity(
            db,
            "subscription.payment_failed",
            user_id=subscription.user_id,
            target_type="subscription",
            target_id=subscription.id,
            metadata={
                "provider": confirmation.provider,
                "providerTransactionId": confirmation.provider_transaction_id,
                "reason": failure_reason,
            },
        )
        await db.commit()
        logger.info("Provider reported failed payment for subscription %s: %s", subscription_id, failure_reason)
        return ConfirmationOutcome(subscription=subscription)
