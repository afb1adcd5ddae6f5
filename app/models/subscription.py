"""Subscription model - User's subscription to a plan.

This module contains the Subscription ledger row, which links a user to a
plan for one coverage period, and the payment confirmation record used as the
dedupe key for idempotent activation and renewal.
"""

import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UTCDateTime, str_enum
from app.models.models import AuditMixin, TimestampMixin, UUIDMixin
from app.models.subscription_enums import (
    BillingPeriod,
    CancellationReason,
    ConfirmationKind,
    SubscriptionStatus,
)

# At most one subscription per user may be in a current state.
CURRENT_STATUS_SQL = "status IN ('pending', 'active', 'pending_cancellation')"


class Subscription(UUIDMixin, TimestampMixin, Base):
    """User subscription model.

    Rows are never deleted: ``expired`` and ``cancelled`` are terminal and kept
    as history. ``token_limit`` is a snapshot of the plan quota (NULL means
    unlimited) taken at subscribe time.
    """

    __tablename__ = "tbl_subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user", "user_id"),
        Index("ix_subscriptions_plan", "plan_id"),
        Index(
            "uq_subscriptions_user_current",
            "user_id",
            unique=True,
            postgresql_where=text(CURRENT_STATUS_SQL),
            sqlite_where=text(CURRENT_STATUS_SQL),
        ),
        CheckConstraint("token_usage >= 0", name="ck_subscriptions_token_usage"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tbl_users.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tbl_mstr_plans.id"), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(128), nullable=False)
    billing_period: Mapped[BillingPeriod] = mapped_column(
        str_enum(BillingPeriod, "billing_period"), nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        str_enum(SubscriptionStatus, "subscription_status"), nullable=False
    )

    start_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    token_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    token_limit: Mapped[Optional[int]] = mapped_column(Integer)
    # features is TEXT in database, storing the plan's JSON list at subscribe time
    features: Mapped[Optional[str]] = mapped_column(Text)

    # Plan monthly price at subscribe time; plan changes are compared against it
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    period_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    credit_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00"), server_default=text("0")
    )
    amount_due: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    payment_provider: Mapped[Optional[str]] = mapped_column(String(64))
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255))

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancellation_reason: Mapped[Optional[CancellationReason]] = mapped_column(
        str_enum(CancellationReason, "cancellation_reason")
    )
    replaces_subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("tbl_subscriptions.id")
    )

    # Deferred downgrade, applied when this subscription expires
    scheduled_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("tbl_mstr_plans.id"))
    scheduled_billing_period: Mapped[Optional[BillingPeriod]] = mapped_column(
        str_enum(BillingPeriod, "scheduled_billing_period")
    )

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_unlimited(self) -> bool:
        return self.token_limit is None

    @property
    def remaining_tokens(self) -> Optional[int]:
        if self.token_limit is None:
            return None
        return max(0, self.token_limit - self.token_usage)

    @property
    def feature_list(self) -> list[str]:
        return json.loads(self.features) if self.features else []


class PaymentConfirmationRecord(UUIDMixin, AuditMixin, Base):
    """Dedupe key for applied payment confirmations.

    The unique constraint makes replays of the same provider transaction
    against the same subscription fail at the database, whatever the number
    of workers racing on it.
    """

    __tablename__ = "tbl_payment_confirmations"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "provider_transaction_id",
            name="uq_payment_confirmation_subscription_txn",
        ),
        Index("ix_payment_confirmations_reference", "subscription_id", "provider_reference"),
    )

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tbl_subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Checkout reference the client submitted, when the gateway issued its own transaction id
    provider_reference: Mapped[Optional[str]] = mapped_column(String(255))
    billing_period: Mapped[BillingPeriod] = mapped_column(
        str_enum(BillingPeriod, "confirmation_billing_period"), nullable=False
    )
    kind: Mapped[ConfirmationKind] = mapped_column(str_enum(ConfirmationKind, "confirmation_kind"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
