"""Subscription-related enums.

This module contains enums used by subscription models:
- SubscriptionStatus: Lifecycle state of a subscription
- BillingPeriod: Coverage length paid for by one confirmation
- CancellationReason: Why a subscription reached ``cancelled``
- ConfirmationKind: What a recorded payment confirmation committed
- UsageSource: Origin of a usage event
"""

import enum


class SubscriptionStatus(str, enum.Enum):
    """Status of a subscription."""

    PENDING = "pending"
    ACTIVE = "active"
    PENDING_CANCELLATION = "pending_cancellation"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_current(self) -> bool:
        return self in CURRENT_STATUSES

    @property
    def is_entitled(self) -> bool:
        """Paid-for states in which quota may be consumed."""
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CANCELLATION)


CURRENT_STATUSES = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING_CANCELLATION,
)


class BillingPeriod(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class CancellationReason(str, enum.Enum):
    USER = "user"
    UPGRADE = "upgrade"
    ABANDONED = "abandoned"
    PENDING_TIMEOUT = "pending_timeout"


class ConfirmationKind(str, enum.Enum):
    ACTIVATION = "activation"
    RENEWAL = "renewal"


class UsageSource(str, enum.Enum):
    CONSUME = "consume"
    ADMIN_ADJUST = "admin_adjust"
    PLAN_RESET = "plan_reset"
    RENEWAL_RESET = "renewal_reset"
