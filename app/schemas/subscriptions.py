"""Subscription, plan and usage schemas."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from app.models.subscription_enums import BillingPeriod, SubscriptionStatus


class Plan(BaseModel):
    """Subscription plan details."""

    id: str
    code: str
    name: str
    monthly_price: float = Field(..., ge=0, alias="monthlyPrice")
    yearly_price: Optional[float] = Field(None, alias="yearlyPrice", description="null for free plans")
    yearly_discount_rate: float = Field(..., alias="yearlyDiscountRate")
    token_limit: Optional[int] = Field(None, alias="tokenLimit", description="null means unlimited")
    unlimited: bool
    features: list[str]
    is_active: bool = Field(..., alias="isActive")

    class Config:
        populate_by_name = True


class PlanCreateRequest(BaseModel):
    """Admin request to publish a new plan."""

    code: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=128)
    monthly_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2, alias="monthlyPrice")
    token_limit: Optional[int] = Field(None, ge=0, alias="tokenLimit", description="null means unlimited")
    features: list[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class PlanUpdateRequest(BaseModel):
    """Admin request to edit a plan. Only fields present in the body change."""

    name: Optional[str] = Field(None, min_length=1, max_length=128)
    monthly_price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2, alias="monthlyPrice")
    token_limit: Optional[int] = Field(None, ge=0, alias="tokenLimit", description="null means unlimited")
    features: Optional[list[str]] = None
    is_active: Optional[bool] = Field(None, alias="isActive")

    class Config:
        populate_by_name = True


class Subscription(BaseModel):
    """A subscription ledger row as seen by the portal."""

    id: str
    user_id: str = Field(..., alias="userId")
    plan_id: str = Field(..., alias="planId")
    plan_name: str = Field(..., alias="planName")
    billing_period: BillingPeriod = Field(..., alias="billingPeriod")
    status: SubscriptionStatus
    start_date: Optional[datetime] = Field(None, alias="startDate")
    end_date: Optional[datetime] = Field(None, alias="endDate")
    auto_renew: bool = Field(..., alias="autoRenew")
    token_usage: int = Field(..., ge=0, alias="tokenUsage")
    token_limit: Optional[int] = Field(None, alias="tokenLimit", description="null means unlimited")
    unlimited: bool
    remaining_tokens: Optional[int] = Field(None, alias="remainingTokens")
    features: list[str]
    period_price: float = Field(..., alias="periodPrice")
    credit_amount: float = Field(..., alias="creditAmount")
    amount_due: float = Field(..., alias="amountDue")
    payment_provider: Optional[str] = Field(None, alias="paymentProvider")
    cancellation_reason: Optional[str] = Field(None, alias="cancellationReason")
    scheduled_plan_id: Optional[str] = Field(None, alias="scheduledPlanId")
    created_at: datetime = Field(..., alias="createdAt")

    class Config:
        populate_by_name = True


class SubscribeRequest(BaseModel):
    plan_id: uuid.UUID = Field(..., alias="planId")
    billing_period: BillingPeriod = Field(BillingPeriod.MONTHLY, alias="billingPeriod")

    class Config:
        populate_by_name = True


class PaymentConfirmRequest(BaseModel):
    """Payment step sent by the portal after the provider checkout."""

    subscription_id: uuid.UUID = Field(..., alias="subscriptionId")
    payment_provider: str = Field(..., min_length=1, max_length=64, alias="paymentProvider")
    payment_subscription_id: Optional[str] = Field(None, max_length=255, alias="paymentSubscriptionId")
    duration: Optional[BillingPeriod] = None

    class Config:
        populate_by_name = True


class PaymentWebhookRequest(BaseModel):
    """Asynchronous notification pushed by the payment provider."""

    event: Literal["payment.succeeded", "payment.failed", "renewal.succeeded"]
    subscription_id: uuid.UUID = Field(..., alias="subscriptionId")
    provider: str = Field(..., min_length=1, max_length=64)
    provider_transaction_id: str = Field(..., min_length=1, max_length=255, alias="providerTransactionId")
    billing_period: Optional[BillingPeriod] = Field(None, alias="billingPeriod")
    failure_reason: Optional[str] = Field(None, alias="failureReason")

    class Config:
        populate_by_name = True


class ConsumeRequest(BaseModel):
    amount: int = Field(..., gt=0)


class TokenUsageAdjustRequest(BaseModel):
    subscription_id: uuid.UUID = Field(..., alias="subscriptionId")
    delta: int

    class Config:
        populate_by_name = True


class ResetTokensRequest(BaseModel):
    plan_id: uuid.UUID = Field(..., alias="planId")

    class Config:
        populate_by_name = True


class Usage(BaseModel):
    """Token quota state of a subscription."""

    subscription_id: str = Field(..., alias="subscriptionId")
    status: SubscriptionStatus
    token_usage: int = Field(..., ge=0, alias="tokenUsage")
    token_limit: Optional[int] = Field(None, alias="tokenLimit", description="null means unlimited")
    remaining_tokens: Optional[int] = Field(None, alias="remainingTokens")
    unlimited: bool

    class Config:
        populate_by_name = True


class UsageAudit(BaseModel):
    subscription_id: str = Field(..., alias="subscriptionId")
    token_usage: int = Field(..., alias="tokenUsage")
    event_total: int = Field(..., alias="eventTotal")
    consistent: bool

    class Config:
        populate_by_name = True
