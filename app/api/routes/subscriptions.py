"""Subscription, plan and usage routes."""

import secrets
import uuid
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header

from app.api.deps import AdminUser, CurrentUser, DB, ensure_role
from app.core.config import settings
from app.schemas.subscriptions import (
    ConsumeRequest,
    PaymentConfirmRequest,
    PaymentWebhookRequest,
    PlanCreateRequest,
    PlanUpdateRequest,
    ResetTokensRequest,
    SubscribeRequest,
    TokenUsageAdjustRequest,
)
from app.services.payment_gateway import PaymentConfirmation, PaymentGateway, get_payment_gateway
from app.services.plan_catalog import PlanCatalogService
from app.services.subscription_service import SubscriptionService
from app.services.usage_meter import UsageMeter
from app.utils.envelopes import api_success
from app.utils.exceptions import ForbiddenException

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

SubscriberRole = Literal["client", "lawyer"]


def _plan_payload(plan) -> dict:
    return PlanCatalogService.to_schema(plan).model_dump(by_alias=True)


def _subscription_payload(subscription) -> Optional[dict]:
    if subscription is None:
        return None
    return SubscriptionService.to_schema(subscription).model_dump(by_alias=True)


# ----------------------------------------------------------------------
# Plan catalog
# ----------------------------------------------------------------------


@router.get("/plans", response_model=dict)
async def list_plans(db: DB, includeInactive: bool = False):
    """List the plans offered to subscribers."""
    plans = await PlanCatalogService.list_plans(db, include_inactive=includeInactive)
    return api_success(plans=[_plan_payload(plan) for plan in plans])


@router.get("/plans/{plan_id}", response_model=dict)
async def get_plan(plan_id: uuid.UUID, db: DB):
    plan = await PlanCatalogService.get_plan(db, plan_id)
    return api_success(plan=_plan_payload(plan))


@router.post("/plans", response_model=dict, status_code=201)
async def create_plan(payload: PlanCreateRequest, admin: AdminUser, db: DB):
    plan = await PlanCatalogService.create_plan(
        db,
        code=payload.code,
        name=payload.name,
        monthly_price=payload.monthly_price,
        token_limit=payload.token_limit,
        features=payload.features,
        actor_id=admin.id,
    )
    return api_success(plan=_plan_payload(plan))


@router.put("/plans/{plan_id}", response_model=dict)
async def update_plan(plan_id: uuid.UUID, payload: PlanUpdateRequest, admin: AdminUser, db: DB):
    # Only fields present in the body are applied; tokenLimit=null means unlimited
    changes = payload.model_dump(include=payload.model_fields_set)
    plan = await PlanCatalogService.update_plan(db, plan_id, changes, actor_id=admin.id)
    return api_success(plan=_plan_payload(plan))


@router.delete("/plans/{plan_id}", response_model=dict)
async def delete_plan(plan_id: uuid.UUID, admin: AdminUser, db: DB):
    await PlanCatalogService.delete_plan(db, plan_id, actor_id=admin.id)
    return api_success(deleted=True)


# ----------------------------------------------------------------------
# Caller's subscription
# ----------------------------------------------------------------------


@router.get("/user/{role}", response_model=dict)
async def get_my_subscription(role: SubscriberRole, current_user: CurrentUser, db: DB):
    """Current subscription of the caller, or null."""
    ensure_role(role, current_user)
    current = await SubscriptionService.get_current(db, current_user.id)
    return api_success(subscription=_subscription_payload(current))


@router.get("/user/{role}/history", response_model=dict)
async def get_my_history(role: SubscriberRole, current_user: CurrentUser, db: DB):
    ensure_role(role, current_user)
    history = await SubscriptionService.get_history(db, current_user.id)
    return api_success(history=[_subscription_payload(subscription) for subscription in history])


@router.get("/user/{role}/usage", response_model=dict)
async def get_my_usage(role: SubscriberRole, current_user: CurrentUser, db: DB):
    ensure_role(role, current_user)
    current = await SubscriptionService.get_current(db, current_user.id)
    if current is None:
        return api_success(usage=None)
    usage = UsageMeter.to_usage(current).model_dump(by_alias=True)
    usage["audit"] = (await UsageMeter.audit(db, current.id)).model_dump(by_alias=True)
    return api_success(usage=usage)


@router.post("/subscribe/{role}", response_model=dict, status_code=201)
async def subscribe(role: SubscriberRole, payload: SubscribeRequest, current_user: CurrentUser, db: DB):
    """Open a pending subscription (or schedule a downgrade when deferral is enabled)."""
    ensure_role(role, current_user)
    result = await SubscriptionService.subscribe(db, current_user.id, payload.plan_id, payload.billing_period)
    subscription = result.subscription
    return api_success(
        subscriptionId=str(subscription.id),
        status=subscription.status.value,
        amountDue=float(subscription.amount_due),
        creditAmount=float(subscription.credit_amount),
        deferred=result.deferred,
        effectiveAt=subscription.end_date if result.deferred else None,
        replacesSubscriptionId=str(result.replaced_subscription_id) if result.replaced_subscription_id else None,
    )


@router.post("/subscribe/{role}/payment", response_model=dict)
async def confirm_payment(
    role: SubscriberRole,
    payload: PaymentConfirmRequest,
    current_user: CurrentUser,
    db: DB,
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Confirm the checkout of a pending subscription with the payment provider."""
    ensure_role(role, current_user)
    outcome = await SubscriptionService.process_payment(
        db,
        user_id=current_user.id,
        subscription_id=payload.subscription_id,
        provider=payload.payment_provider,
        provider_reference=payload.payment_subscription_id,
        gateway=gateway,
        duration=payload.duration,
    )
    return api_success(subscription=_subscription_payload(outcome.subscription), replayed=outcome.replayed)


@router.delete("/subscribe/{role}", response_model=dict)
async def cancel_subscription(role: SubscriberRole, current_user: CurrentUser, db: DB):
    """Abandon a pending subscription or stop auto-renewal of the active one."""
    ensure_role(role, current_user)
    subscription = await SubscriptionService.cancel_current(db, current_user.id)
    return api_success(subscription=_subscription_payload(subscription))


# ----------------------------------------------------------------------
# Usage
# ----------------------------------------------------------------------


@router.post("/usage/{role}/consume", response_model=dict)
async def consume_tokens(role: SubscriberRole, payload: ConsumeRequest, current_user: CurrentUser, db: DB):
    ensure_role(role, current_user)
    subscription = await UsageMeter.consume_for_user(db, current_user.id, payload.amount)
    return api_success(usage=UsageMeter.to_usage(subscription).model_dump(by_alias=True))


@router.put("/token-usage", response_model=dict)
async def adjust_token_usage(payload: TokenUsageAdjustRequest, admin: AdminUser, db: DB):
    subscription = await UsageMeter.adjust_usage(db, payload.subscription_id, payload.delta, actor_id=admin.id)
    return api_success(usage=UsageMeter.to_usage(subscription).model_dump(by_alias=True))


@router.post("/reset-tokens", response_model=dict)
async def reset_tokens(payload: ResetTokensRequest, admin: AdminUser, db: DB):
    count = await UsageMeter.reset_plan_usage(db, payload.plan_id, actor_id=admin.id)
    return api_success(updated=count)


# ----------------------------------------------------------------------
# Provider callbacks and maintenance
# ----------------------------------------------------------------------


@router.post("/webhooks/payment", response_model=dict)
async def payment_webhook(
    payload: PaymentWebhookRequest,
    db: DB,
    x_webhook_secret: Optional[str] = Header(default=None),
):
    """Payment provider notification (activation, renewal or failure)."""
    expected = settings.PAYMENT_WEBHOOK_SECRET
    if not expected or not x_webhook_secret or not secrets.compare_digest(x_webhook_secret, expected):
        raise ForbiddenException("Invalid webhook secret")

    confirmation = PaymentConfirmation(
        provider=payload.provider,
        provider_transaction_id=payload.provider_transaction_id,
        billing_period=payload.billing_period,
    )
    outcome = await SubscriptionService.handle_payment_event(
        db,
        payload.event,
        payload.subscription_id,
        confirmation,
        failure_reason=payload.failure_reason,
    )
    return api_success(subscription=_subscription_payload(outcome.subscription), replayed=outcome.replayed)


@router.post("/maintenance/expire-pending", response_model=dict)
async def expire_pending(admin: AdminUser, db: DB):
    """Sweep abandoned pending subscriptions and lapsed periods."""
    cancelled = await SubscriptionService.expire_stale_pending(db)
    expired = await SubscriptionService.expire_lapsed(db)
    return api_success(pendingCancelled=cancelled, expired=expired)
