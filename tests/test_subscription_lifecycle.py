"""
Subscription state machine tests.

Covers subscribe / confirm / cancel / expiry transitions, plan changes
(upgrade with proration, rejected or deferred downgrade), idempotent
confirmations, renewals and pending timeouts. Time is passed explicitly.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.config import settings
from app.database.subscription_repo import SubscriptionRepository
from app.models.subscription_enums import BillingPeriod, CancellationReason, SubscriptionStatus, UsageSource
from app.services.payment_gateway import ConfirmationResult, PaymentConfirmation, PaymentGateway
from app.services.plan_catalog import PlanCatalogService
from app.services.subscription_service import SubscriptionService
from app.services.usage_meter import UsageMeter
from app.utils.exceptions import (
    DowngradeNotAllowedException,
    NotActiveException,
    NotFoundException,
    PaymentFailedException,
    PlanNotFoundException,
    SubscriptionNotPendingException,
    ValidationException,
)

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def _confirmation(txn: str, period=None) -> PaymentConfirmation:
    return PaymentConfirmation(provider="card", provider_transaction_id=txn, billing_period=period)


async def _activate(db, user, plan, now=T0, period=BillingPeriod.MONTHLY, txn="txn-1"):
    result = await SubscriptionService.subscribe(db, user.id, plan.id, period, now=now)
    outcome = await SubscriptionService.confirm_payment(db, result.subscription.id, _confirmation(txn), now=now)
    return outcome.subscription


class TestSubscribe:
    async def test_new_subscription_is_pending_with_plan_snapshot(self, db, plans, client_user):
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0)
        subscription = result.subscription

        assert subscription.status == SubscriptionStatus.PENDING
        assert subscription.token_usage == 0
        assert subscription.token_limit == 2000
        assert subscription.end_date is None
        assert subscription.auto_renew is False
        assert subscription.amount_due == Decimal("19.99")
        assert subscription.feature_list == ["Legal Q&A", "Contract review"]
        assert result.deferred is False

    async def test_yearly_price_snapshot(self, db, plans, client_user):
        result = await SubscriptionService.subscribe(
            db, client_user.id, plans["standard"].id, BillingPeriod.YEARLY, now=T0
        )
        assert result.subscription.period_price == Decimal("215.89")

    async def test_free_plan_cannot_be_yearly(self, db, plans, client_user):
        with pytest.raises(ValidationException):
            await SubscriptionService.subscribe(db, client_user.id, plans["free"].id, BillingPeriod.YEARLY, now=T0)
        assert await SubscriptionService.get_current(db, client_user.id, now=T0) is None

    async def test_withdrawn_plan_is_not_found(self, db, plans, client_user):
        await PlanCatalogService.update_plan(db, plans["standard"].id, {"is_active": False})
        with pytest.raises(PlanNotFoundException):
            await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0)

    async def test_resubscribing_replaces_abandoned_pending(self, db, plans, client_user):
        first = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0)
        second = await SubscriptionService.subscribe(
            db, client_user.id, plans["premium"].id, now=T0 + timedelta(minutes=5)
        )

        assert second.replaced_subscription_id == first.subscription.id
        old = await SubscriptionService.get_subscription(db, first.subscription.id)
        assert old.status == SubscriptionStatus.CANCELLED
        assert old.cancellation_reason == CancellationReason.ABANDONED

        current = await SubscriptionService.get_current(db, client_user.id, now=T0 + timedelta(minutes=6))
        assert current.id == second.subscription.id


class TestPlanChanges:
    async def test_downgrade_is_rejected(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["premium"])
        assert active.status == SubscriptionStatus.ACTIVE
        assert active.end_date == datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)

        with pytest.raises(DowngradeNotAllowedException) as exc_info:
            await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0 + timedelta(days=1))
        assert exc_info.value.status_code == 409

        current = await SubscriptionService.get_current(db, client_user.id, now=T0 + timedelta(days=1))
        assert current.id == active.id
        assert current.status == SubscriptionStatus.ACTIVE

    async def test_same_plan_is_rejected(self, db, plans, client_user):
        await _activate(db, client_user, plans["standard"])
        with pytest.raises(DowngradeNotAllowedException):
            await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0 + timedelta(days=1))

    async def test_same_plan_is_rejected_even_when_deferring(self, db, plans, client_user, monkeypatch):
        monkeypatch.setattr(settings, "DOWNGRADE_POLICY", "defer")
        await _activate(db, client_user, plans["standard"])
        with pytest.raises(DowngradeNotAllowedException):
            await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0 + timedelta(days=1))

    async def test_upgrade_cancels_current_and_credits_unused_days(self, db, plans, client_user):
        standard = await _activate(db, client_user, plans["standard"])
        upgrade_at = datetime(2026, 1, 17, 9, 0, tzinfo=timezone.utc)

        result = await SubscriptionService.subscribe(db, client_user.id, plans["premium"].id, now=upgrade_at)
        new = result.subscription

        previous = await SubscriptionService.get_subscription(db, standard.id)
        assert previous.status == SubscriptionStatus.CANCELLED
        assert previous.cancellation_reason == CancellationReason.UPGRADE
        assert new.status == SubscriptionStatus.PENDING
        assert new.replaces_subscription_id == standard.id
        # 15 of 31 days remain on a 19.99 period
        assert new.credit_amount == Decimal("9.67")
        assert new.amount_due == Decimal("40.32")

        current = await SubscriptionService.get_current(db, client_user.id, now=upgrade_at)
        assert current.id == new.id

    async def test_upgrade_is_judged_on_the_price_paid(self, db, plans, client_user):
        standard = await _activate(db, client_user, plans["standard"])
        # Repricing the catalog does not change what the subscriber pays
        await PlanCatalogService.update_plan(db, plans["standard"].id, {"monthly_price": Decimal("59.99")})

        result = await SubscriptionService.subscribe(
            db, client_user.id, plans["premium"].id, now=T0 + timedelta(days=1)
        )

        assert result.subscription.status == SubscriptionStatus.PENDING
        assert result.replaced_subscription_id == standard.id
        assert result.subscription.monthly_price == Decimal("49.99")

    async def test_upgrade_without_proration(self, db, plans, client_user, monkeypatch):
        monkeypatch.setattr(settings, "PRORATE_UPGRADES", False)
        await _activate(db, client_user, plans["standard"])
        result = await SubscriptionService.subscribe(
            db, client_user.id, plans["premium"].id, now=T0 + timedelta(days=10)
        )
        assert result.subscription.credit_amount == Decimal("0.00")
        assert result.subscription.amount_due == Decimal("49.99")

    async def test_deferred_downgrade_starts_at_period_end(self, db, plans, client_user, monkeypatch):
        monkeypatch.setattr(settings, "DOWNGRADE_POLICY", "defer")
        premium = await _activate(db, client_user, plans["premium"])

        result = await SubscriptionService.subscribe(
            db, client_user.id, plans["standard"].id, now=T0 + timedelta(days=3)
        )
        assert result.deferred is True
        assert result.subscription.id == premium.id
        assert result.subscription.status == SubscriptionStatus.PENDING_CANCELLATION
        assert result.subscription.auto_renew is False
        assert result.subscription.scheduled_plan_id == plans["standard"].id

        # Still entitled to the premium period
        before_end = premium.end_date - timedelta(seconds=1)
        current = await SubscriptionService.get_current(db, client_user.id, now=before_end)
        assert current.id == premium.id

        successor = await SubscriptionService.get_current(db, client_user.id, now=premium.end_date)
        assert successor.plan_id == plans["standard"].id
        assert successor.status == SubscriptionStatus.PENDING
        assert successor.replaces_subscription_id == premium.id
        expired = await SubscriptionService.get_subscription(db, premium.id)
        assert expired.status == SubscriptionStatus.EXPIRED

    async def test_deferred_downgrade_to_free_activates_immediately(self, db, plans, client_user, monkeypatch):
        monkeypatch.setattr(settings, "DOWNGRADE_POLICY", "defer")
        standard = await _activate(db, client_user, plans["standard"])
        await SubscriptionService.subscribe(db, client_user.id, plans["free"].id, now=T0 + timedelta(days=3))

        successor = await SubscriptionService.get_current(db, client_user.id, now=standard.end_date)
        assert successor.status == SubscriptionStatus.ACTIVE
        assert successor.payment_provider == "free"
        assert successor.token_limit == 100
        assert successor.end_date == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class TestConfirmPayment:
    async def test_activation_sets_period(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        assert active.start_date == T0
        assert active.end_date == datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)
        assert active.auto_renew is True
        assert active.payment_provider == "card"
        assert active.provider_transaction_id == "txn-1"

    async def test_replayed_confirmation_is_a_no_op(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        later = T0 + timedelta(days=2)

        outcome = await SubscriptionService.confirm_payment(db, active.id, _confirmation("txn-1"), now=later)

        assert outcome.replayed is True
        assert outcome.subscription.status == SubscriptionStatus.ACTIVE
        assert outcome.subscription.end_date == active.end_date

    async def test_new_transaction_on_active_subscription_is_rejected(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        with pytest.raises(SubscriptionNotPendingException):
            await SubscriptionService.confirm_payment(db, active.id, _confirmation("txn-2"), now=T0)

    async def test_confirmation_can_choose_yearly_billing(self, db, plans, client_user):
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0)
        outcome = await SubscriptionService.confirm_payment(
            db, result.subscription.id, _confirmation("txn-y", BillingPeriod.YEARLY), now=T0
        )
        subscription = outcome.subscription
        assert subscription.billing_period == BillingPeriod.YEARLY
        assert subscription.period_price == Decimal("215.89")
        assert subscription.end_date == datetime(2027, 1, 1, 9, 0, tzinfo=timezone.utc)

    async def test_unknown_subscription(self, db, plans):
        import uuid

        with pytest.raises(NotFoundException):
            await SubscriptionService.confirm_payment(db, uuid.uuid4(), _confirmation("txn-1"), now=T0)


class _DecliningGateway(PaymentGateway):
    async def confirm(self, request):
        return ConfirmationResult(success=False, failure_reason="Card declined")


class _SlowGateway(PaymentGateway):
    async def confirm(self, request):
        await asyncio.sleep(1)
        return ConfirmationResult(success=True, provider_transaction_id="late")


class _RecordingGateway(PaymentGateway):
    def __init__(self):
        self.requests = []

    async def confirm(self, request):
        self.requests.append(request)
        return ConfirmationResult(success=True, provider_transaction_id=f"gw-{request.provider_reference}")


class TestProcessPayment:
    async def test_gateway_confirmation_activates(self, db, plans, client_user):
        gateway = _RecordingGateway()
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id)

        outcome = await SubscriptionService.process_payment(
            db, client_user.id, result.subscription.id, "card", "ref-1", gateway
        )

        assert outcome.subscription.status == SubscriptionStatus.ACTIVE
        assert outcome.subscription.provider_transaction_id == "gw-ref-1"
        assert gateway.requests[0].amount == Decimal("19.99")
        assert gateway.requests[0].currency == settings.CURRENCY

    async def test_declined_payment_leaves_subscription_pending(self, db, plans, client_user):
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id)
        with pytest.raises(PaymentFailedException) as exc_info:
            await SubscriptionService.process_payment(
                db, client_user.id, result.subscription.id, "card", "ref-1", _DecliningGateway()
            )
        assert exc_info.value.message == "Card declined"
        assert exc_info.value.status_code == 402

        current = await SubscriptionService.get_current(db, client_user.id)
        assert current.status == SubscriptionStatus.PENDING

    async def test_gateway_timeout_leaves_subscription_pending(self, db, plans, client_user, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_TIMEOUT_SECONDS", 0.05)
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id)
        with pytest.raises(PaymentFailedException):
            await SubscriptionService.process_payment(
                db, client_user.id, result.subscription.id, "card", "ref-1", _SlowGateway()
            )
        current = await SubscriptionService.get_current(db, client_user.id)
        assert current.status == SubscriptionStatus.PENDING

    async def test_free_plan_skips_the_gateway(self, db, plans, client_user):
        gateway = _RecordingGateway()
        result = await SubscriptionService.subscribe(db, client_user.id, plans["free"].id)
        outcome = await SubscriptionService.process_payment(
            db, client_user.id, result.subscription.id, "card", None, gateway
        )
        assert outcome.subscription.status == SubscriptionStatus.ACTIVE
        assert outcome.subscription.payment_provider == "free"
        assert gateway.requests == []

    async def test_resubmitted_checkout_is_replayed(self, db, plans, client_user):
        gateway = _RecordingGateway()
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id)

        first = await SubscriptionService.process_payment(
            db, client_user.id, result.subscription.id, "card", "ref-1", gateway
        )
        second = await SubscriptionService.process_payment(
            db, client_user.id, result.subscription.id, "card", "ref-1", gateway
        )

        assert first.replayed is False
        assert second.replayed is True
        assert second.subscription.provider_transaction_id == "gw-ref-1"
        assert len(gateway.requests) == 1

    async def test_other_users_subscription_is_not_found(self, db, plans, client_user, lawyer_user):
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id)
        with pytest.raises(NotFoundException):
            await SubscriptionService.process_payment(
                db, lawyer_user.id, result.subscription.id, "card", "ref-1", _RecordingGateway()
            )


class TestCancellation:
    async def test_cancel_keeps_end_date_and_quota(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        end_date = active.end_date

        cancelled = await SubscriptionService.cancel(db, active.id, now=T0 + timedelta(days=5))
        assert cancelled.status == SubscriptionStatus.PENDING_CANCELLATION
        assert cancelled.auto_renew is False
        assert cancelled.end_date == end_date

        usage = await UsageMeter.consume(db, active.id, 10, now=T0 + timedelta(days=6))
        assert usage.token_usage == 10

    async def test_cancel_twice_is_not_active(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        await SubscriptionService.cancel(db, active.id, now=T0 + timedelta(days=1))
        with pytest.raises(NotActiveException):
            await SubscriptionService.cancel(db, active.id, now=T0 + timedelta(days=2))

    async def test_cancel_pending_subscription(self, db, plans, client_user):
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0)
        cancelled = await SubscriptionService.cancel_current(db, client_user.id, now=T0 + timedelta(minutes=1))
        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancellation_reason == CancellationReason.ABANDONED

        with pytest.raises(SubscriptionNotPendingException):
            await SubscriptionService.cancel_pending(db, result.subscription.id, now=T0 + timedelta(minutes=2))

    async def test_cancel_without_subscription(self, db, plans, client_user):
        with pytest.raises(NotFoundException):
            await SubscriptionService.cancel_current(db, client_user.id, now=T0)


class TestLazyTransitions:
    async def test_expiry_is_persisted_on_first_read(self, db, plans, client_user, session_factory):
        active = await _activate(db, client_user, plans["free"])
        await SubscriptionService.cancel(db, active.id, now=T0 + timedelta(days=1))

        after_end = active.end_date + timedelta(seconds=1)
        assert await SubscriptionService.get_current(db, client_user.id, now=after_end) is None

        async with session_factory() as other:
            stored = await SubscriptionRepository.get_subscription(other, active.id)
            assert stored.status == SubscriptionStatus.EXPIRED

        with pytest.raises(NotActiveException):
            await UsageMeter.consume(db, active.id, 1, now=after_end)

    async def test_auto_renewing_subscription_lapses_after_renewal_grace(self, db, plans, client_user, monkeypatch):
        monkeypatch.setattr(settings, "RENEWAL_GRACE_MINUTES", 60)
        active = await _activate(db, client_user, plans["standard"])
        end_date = active.end_date

        usage = await UsageMeter.consume(db, active.id, 1, now=end_date + timedelta(minutes=30))
        assert usage.status == SubscriptionStatus.ACTIVE

        with pytest.raises(NotActiveException):
            await UsageMeter.consume(db, active.id, 1, now=end_date + timedelta(minutes=60))
        subscription = await SubscriptionService.get_subscription(db, active.id)
        assert subscription.status == SubscriptionStatus.EXPIRED

    async def test_stale_pending_times_out(self, db, plans, client_user):
        result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0)

        assert await SubscriptionService.get_current(db, client_user.id, now=T0 + timedelta(minutes=59)) is not None
        assert await SubscriptionService.get_current(db, client_user.id, now=T0 + timedelta(minutes=61)) is None

        history = await SubscriptionService.get_history(db, client_user.id, now=T0 + timedelta(minutes=62))
        assert [subscription.id for subscription in history] == [result.subscription.id]
        assert history[0].cancellation_reason == CancellationReason.PENDING_TIMEOUT

    async def test_expire_stale_pending_in_bulk(self, db, plans, client_user, lawyer_user):
        await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0)
        await SubscriptionService.subscribe(db, lawyer_user.id, plans["premium"].id, now=T0 + timedelta(minutes=30))

        count = await SubscriptionService.expire_stale_pending(db, now=T0 + timedelta(minutes=70))

        assert count == 1
        assert await SubscriptionService.get_current(db, client_user.id, now=T0 + timedelta(minutes=70)) is None
        lawyer_current = await SubscriptionService.get_current(db, lawyer_user.id, now=T0 + timedelta(minutes=70))
        assert lawyer_current.status == SubscriptionStatus.PENDING

    async def test_history_is_newest_first(self, db, plans, client_user):
        first = await SubscriptionService.subscribe(db, client_user.id, plans["free"].id, now=T0)
        second = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0 + timedelta(minutes=1))
        history = await SubscriptionService.get_history(db, client_user.id, now=T0 + timedelta(minutes=2))
        assert [subscription.id for subscription in history] == [second.subscription.id, first.subscription.id]


class TestRenewal:
    async def test_renewal_extends_period_and_resets_usage(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        await UsageMeter.consume(db, active.id, 300, now=T0 + timedelta(days=3))

        outcome = await SubscriptionService.renew(
            db, active.id, _confirmation("txn-renew-1"), now=active.end_date - timedelta(hours=1)
        )

        renewed = outcome.subscription
        assert renewed.end_date == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        assert renewed.token_usage == 0
        audit = await UsageMeter.audit(db, active.id)
        assert audit.consistent

        replay = await SubscriptionService.renew(
            db, active.id, _confirmation("txn-renew-1"), now=active.end_date - timedelta(minutes=30)
        )
        assert replay.replayed is True
        assert replay.subscription.end_date == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    async def test_renewal_arriving_after_end_date_extends_from_it(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        end_date = active.end_date

        current = await SubscriptionService.get_current(db, client_user.id, now=end_date + timedelta(seconds=1))
        assert current.status == SubscriptionStatus.ACTIVE

        outcome = await SubscriptionService.renew(
            db, active.id, _confirmation("ren-1"), now=end_date + timedelta(seconds=5)
        )

        assert outcome.replayed is False
        assert outcome.subscription.status == SubscriptionStatus.ACTIVE
        assert outcome.subscription.end_date == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    async def test_cancelled_subscription_is_not_renewed(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        await SubscriptionService.cancel(db, active.id, now=T0 + timedelta(days=1))
        with pytest.raises(NotActiveException):
            await SubscriptionService.renew(db, active.id, _confirmation("txn-renew-1"), now=T0 + timedelta(days=2))

    async def test_late_renewal_after_expiry_is_rejected(self, db, plans, client_user):
        active = await _activate(db, client_user, plans["standard"])
        with pytest.raises(NotActiveException):
            await SubscriptionService.renew(
                db, active.id, _confirmation("txn-renew-1"), now=active.end_date + timedelta(days=2)
            )
        subscription = await SubscriptionService.get_subscription(db, active.id)
        assert subscription.status == SubscriptionStatus.EXPIRED


async def test_usage_events_record_renewal_reset(db, plans, client_user):
    active = await _activate(db, client_user, plans["standard"])
    await UsageMeter.consume(db, active.id, 40, now=T0 + timedelta(days=1))
    await SubscriptionService.renew(db, active.id, _confirmation("txn-renew-1"), now=T0 + timedelta(days=30))

    from sqlalchemy import select

    from app.models.usage_event import UsageEvent

    events = (await db.execute(select(UsageEvent).where(UsageEvent.subscription_id == active.id))).scalars().all()
    assert sorted((event.source, event.amount) for event in events) == [
        (UsageSource.CONSUME, 40),
        (UsageSource.RENEWAL_RESET, -40),
    ]
