"""Plan model - Subscription plan definitions.

This module contains the Plan model which defines subscription tiers
(Free, Standard, Premium) with their price, token quota and features.
"""

import json
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Integer, Numeric, String, Text, text, true
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.models import TimestampMixin, UUIDMixin


class Plan(UUIDMixin, TimestampMixin, Base):
    """Subscription plan model.

    A ``token_limit`` of NULL means the plan grants unlimited tokens.
    Subscriptions copy the quota and features at subscribe time, so editing a
    plan never changes an existing grant.
    """

    __tablename__ = "tbl_mstr_plans"
    __table_args__ = (
        CheckConstraint("monthly_price >= 0", name="ck_plans_price_non_negative"),
        CheckConstraint("token_limit IS NULL OR token_limit >= 0", name="ck_plans_token_limit"),
    )

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    token_limit: Mapped[Optional[int]] = mapped_column(Integer)
    # features is TEXT in database, storing a JSON list as string
    features: Mapped[Optional[str]] = mapped_column(Text)
    yearly_discount_rate: Mapped[Decimal] = mapped_column(
        Numeric(4, 2), nullable=False, server_default=text("0")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())

    @property
    def is_free(self) -> bool:
        return Decimal(self.monthly_price) == 0

    @property
    def is_unlimited(self) -> bool:
        return self.token_limit is None

    @property
    def feature_list(self) -> list[str]:
        return json.loads(self.features) if self.features else []
