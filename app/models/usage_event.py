"""UsageEvent model - append-only log of token quota movements.

The sum of a subscription's events always equals its ``token_usage`` counter.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.models.base import Base, UTCDateTime, str_enum
from app.models.models import UUIDMixin
from app.models.subscription_enums import UsageSource
from app.utils.time import utcnow


class UsageEvent(UUIDMixin, Base):
    __tablename__ = "tbl_usage_events"
    __table_args__ = (Index("ix_usage_events_subscription", "subscription_id"),)

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tbl_subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[UsageSource] = mapped_column(str_enum(UsageSource, "usage_source"), nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
