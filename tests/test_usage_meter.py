"""Tests for token consumption and quota administration."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.models.subscription_enums import SubscriptionStatus
from app.services.payment_gateway import PaymentConfirmation
from app.services.subscription_service import SubscriptionService
from app.services.usage_meter import UsageMeter
from app.utils.exceptions import (
    NotActiveException,
    NotFoundException,
    PlanNotFoundException,
    QuotaExceededException,
    ValidationException,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=1)


async def _active(db, user, plan, txn="txn-1"):
    result = await SubscriptionService.subscribe(db, user.id, plan.id, now=T0)
    confirmation = PaymentConfirmation(provider="card", provider_transaction_id=txn)
    return (await SubscriptionService.confirm_payment(db, result.subscription.id, confirmation, now=T0)).subscription


async def test_quota_exceeded_leaves_usage_untouched(db, plans, client_user):
    subscription = await _active(db, client_user, plans["free"])

    after_first = await UsageMeter.consume(db, subscription.id, 60, now=T1)
    assert after_first.token_usage == 60
    assert after_first.remaining_tokens == 40

    with pytest.raises(QuotaExceededException) as exc_info:
        await UsageMeter.consume(db, subscription.id, 50, now=T1)
    assert exc_info.value.status_code == 429
    assert exc_info.value.details["tokenUsage"] == 60

    stored = await SubscriptionService.get_subscription(db, subscription.id)
    await db.refresh(stored)
    assert stored.token_usage == 60


async def test_quota_can_be_used_exactly(db, plans, client_user):
    subscription = await _active(db, client_user, plans["free"])
    result = await UsageMeter.consume(db, subscription.id, 100, now=T1)
    assert result.token_usage == 100
    assert result.remaining_tokens == 0
    with pytest.raises(QuotaExceededException):
        await UsageMeter.consume(db, subscription.id, 1, now=T1)


async def test_unlimited_plan_always_increments(db, plans, client_user):
    subscription = await _active(db, client_user, plans["premium"])
    for _ in range(3):
        subscription = await UsageMeter.consume(db, subscription.id, 1_000_000, now=T1)
    assert subscription.token_usage == 3_000_000
    assert subscription.is_unlimited
    assert subscription.remaining_tokens is None


@pytest.mark.parametrize("amount", [0, -5])
async def test_amount_must_be_positive(db, plans, client_user, amount):
    subscription = await _active(db, client_user, plans["free"])
    with pytest.raises(ValidationException):
        await UsageMeter.consume(db, subscription.id, amount, now=T1)


async def test_pending_subscription_cannot_consume(db, plans, client_user):
    result = await SubscriptionService.subscribe(db, client_user.id, plans["standard"].id, now=T0)
    with pytest.raises(NotActiveException):
        await UsageMeter.consume(db, result.subscription.id, 1, now=T0)


async def test_consume_for_user_resolves_current_subscription(db, plans, client_user):
    subscription = await _active(db, client_user, plans["standard"])
    result = await UsageMeter.consume_for_user(db, client_user.id, 25, now=T1)
    assert result.id == subscription.id
    assert result.token_usage == 25


async def test_consume_for_user_without_subscription(db, plans, client_user):
    with pytest.raises(NotFoundException):
        await UsageMeter.consume_for_user(db, client_user.id, 1, now=T1)


async def test_unknown_subscription(db, plans):
    with pytest.raises(NotFoundException):
        await UsageMeter.consume(db, uuid.uuid4(), 1, now=T1)


async def test_admin_adjustment_is_clamped(db, plans, client_user, admin_user):
    subscription = await _active(db, client_user, plans["free"])
    await UsageMeter.consume(db, subscription.id, 30, now=T1)

    lowered = await UsageMeter.adjust_usage(db, subscription.id, -50, actor_id=admin_user.id, now=T1)
    assert lowered.token_usage == 0

    raised = await UsageMeter.adjust_usage(db, subscription.id, 500, actor_id=admin_user.id, now=T1)
    assert raised.token_usage == 100

    audit = await UsageMeter.audit(db, subscription.id)
    assert audit.token_usage == 100
    assert audit.event_total == 100
    assert audit.consistent


async def test_reset_plan_usage(db, plans, client_user, lawyer_user, admin_user):
    first = await _active(db, client_user, plans["standard"], txn="txn-a")
    second = await _active(db, lawyer_user, plans["standard"], txn="txn-b")
    await UsageMeter.consume(db, first.id, 120, now=T1)

    count = await UsageMeter.reset_plan_usage(db, plans["standard"].id, actor_id=admin_user.id)

    assert count == 1
    for subscription_id in (first.id, second.id):
        audit = await UsageMeter.audit(db, subscription_id)
        assert audit.token_usage == 0
        assert audit.consistent


async def test_reset_unknown_plan(db, plans):
    with pytest.raises(PlanNotFoundException):
        await UsageMeter.reset_plan_usage(db, uuid.uuid4())


async def test_usage_schema(db, plans, client_user):
    subscription = await _active(db, client_user, plans["free"])
    subscription = await UsageMeter.consume(db, subscription.id, 10, now=T1)
    usage = UsageMeter.to_usage(subscription).model_dump(by_alias=True)
    assert usage == {
        "subscriptionId": str(subscription.id),
        "status": SubscriptionStatus.ACTIVE,
        "tokenUsage": 10,
        "tokenLimit": 100,
        "remainingTokens": 90,
        "unlimited": False,
    }
