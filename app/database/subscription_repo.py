"""Repository layer for subscription-related database operations.

This module contains ONLY database access logic - no business rules.
Repository functions fetch data from the database and return raw models or primitive values.

Key Concepts:
- Subscription: One ledger row per (user, coverage period)
- PaymentConfirmationRecord: Dedupe key of an applied payment confirmation
- UsageEvent: Append-only log of token quota movements
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import PaymentConfirmationRecord, Subscription
from app.models.subscription_enums import CURRENT_STATUSES, SubscriptionStatus, UsageSource
from app.models.usage_event import UsageEvent


class SubscriptionRepository:
    """Repository for subscription database operations."""

    @staticmethod
    async def get_subscription(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """
        Fetch a subscription by id.

        Args:
            db: Database session
            subscription_id: ID of the subscription to fetch
            for_update: Re-read the row under a row-level lock, overwriting any
                state already loaded in the session

        Returns:
            Subscription if found, None otherwise
        """
        query = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_owner_id(db: AsyncSession, subscription_id: uuid.UUID) -> Optional[uuid.UUID]:
        """Return the user id owning a subscription (immutable, safe to read unlocked)."""
        result = await db.execute(select(Subscription.user_id).where(Subscription.id == subscription_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_current_for_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """
        Fetch the user's subscription in pending, active or pending_cancellation.

        The partial unique index guarantees there is at most one.
        """
        query = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(CURRENT_STATUSES),
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[Subscription]:
        """Fetch every subscription of a user, newest first."""
        result = await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_date.desc(), Subscription.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def add(db: AsyncSession, subscription: Subscription) -> Subscription:
        """Insert a subscription; unique index violations surface on flush."""
        db.add(subscription)
        await db.flush()
        return subscription

    @staticmethod
    async def find_confirmation(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        provider_transaction_id: str,
    ) -> Optional[PaymentConfirmationRecord]:
        result = await db.execute(
            select(PaymentConfirmationRecord).where(
                PaymentConfirmationRecord.subscription_id == subscription_id,
                PaymentConfirmationRecord.provider_transaction_id == provider_transaction_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def find_confirmation_by_reference(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        provider_reference: str,
    ) -> Optional[PaymentConfirmationRecord]:
        """Find a confirmation by transaction id or by the checkout reference it was obtained with."""
        result = await db.execute(
            select(PaymentConfirmationRecord)
            .where(
                PaymentConfirmationRecord.subscription_id == subscription_id,
                or_(
                    PaymentConfirmationRecord.provider_transaction_id == provider_reference,
                    PaymentConfirmationRecord.provider_reference == provider_reference,
                ),
            )
            .limit(1)
        )
        return result.scalars().first()

    @staticmethod
    async def add_confirmation(db: AsyncSession, record: PaymentConfirmationRecord) -> None:
        """Insert a confirmation record; a replayed key raises IntegrityError on flush."""
        db.add(record)
        await db.flush()

    @staticmethod
    async def increment_usage(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        amount: int,
    ) -> bool:
        """
        Atomically add ``amount`` tokens to a subscription's counter.

        The quota check is part of the UPDATE itself, so the counter is never
        incremented past the limit, even if another writer got there first.

        Returns:
            True if the row was updated, False if the quota (or status) refused it
        """
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status.in_(
                    (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CANCELLATION)
                ),
                or_(
                    Subscription.token_limit.is_(None),
                    Subscription.token_usage + amount <= Subscription.token_limit,
                ),
            )
            .values(
                token_usage=Subscription.token_usage + amount,
                version_id=Subscription.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def add_usage_event(
        db: AsyncSession,
        subscription_id: uuid.UUID,
        amount: int,
        source: UsageSource,
        actor_id: Optional[uuid.UUID] = None,
    ) -> UsageEvent:
        event = UsageEvent(
            subscription_id=subscription_id,
            amount=amount,
            source=source,
            created_by=actor_id,
        )
        db.add(event)
        await db.flush()
        return event

    @staticmethod
    async def sum_usage_events(db: AsyncSession, subscription_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(UsageEvent.amount), 0)).where(
                UsageEvent.subscription_id == subscription_id
            )
        )
        return int(result.scalar_one())

    @staticmethod
    async def list_current_for_plan(db: AsyncSession, plan_id: uuid.UUID) -> list[Subscription]:
        """Fetch the entitled (active / pending_cancellation) subscriptions of a plan."""
        result = await db.execute(
            select(Subscription)
            .where(
                Subscription.plan_id == plan_id,
                Subscription.status.in_(
                    (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CANCELLATION)
                ),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_stale_pending(db: AsyncSession, created_before: datetime) -> list[Subscription]:
        """Fetch pending subscriptions created before the given instant."""
        result = await db.execute(
            select(Subscription).where(
                and_(
                    Subscription.status == SubscriptionStatus.PENDING,
                    Subscription.created_date < created_before,
                )
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_lapsed(db: AsyncSession, now: datetime) -> list[Subscription]:
        """Fetch entitled subscriptions whose end date has passed."""
        result = await db.execute(
            select(Subscription).where(
                Subscription.status.in_(
                    (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CANCELLATION)
                ),
                Subscription.end_date.is_not(None),
                Subscription.end_date <= now,
            )
        )
        return list(result.scalars().all())
