from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.models.base import Base, UTCDateTime, str_enum
from app.utils.time import utcnow


class UUIDMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


class AuditMixin:
    """Audit fields that exist in all tables: created_by, created_date, updated_by, updated_date"""
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    created_date: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    updated_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, onupdate=utcnow)


class TimestampMixin(AuditMixin):
    """Map created_at/updated_at to created_date/updated_date"""
    @property
    def created_at(self) -> datetime:
        return self.created_date

    @property
    def updated_at(self) -> Optional[datetime]:
        return self.updated_date


class UserRole(str, enum.Enum):
    CLIENT = "client"
    LAWYER = "lawyer"
    ADMIN = "admin"

    @property
    def can_subscribe(self) -> bool:
        return self in (UserRole.CLIENT, UserRole.LAWYER)


class User(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "tbl_users"

    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(Text)
    name: Mapped[Optional[str]] = mapped_column(Text)
    role: Mapped[UserRole] = mapped_column(str_enum(UserRole, "user_role"), nullable=False)


class ActivityLog(UUIDMixin, AuditMixin, Base):
    """Append-only audit trail of subscription lifecycle actions."""
    __tablename__ = "tbl_activity_logs"
    __table_args__ = (
        Index("ix_activity_logs_target", "target_type", "target_id"),
        Index("ix_activity_logs_actor", "actor_user_id"),
    )

    actor_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("tbl_users.id", ondelete="SET NULL")
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[Optional[str]] = mapped_column(String(64))
    target_id: Mapped[Optional[str]] = mapped_column(String(64))
    # metadata is TEXT in database, storing JSON as string
    activity_metadata: Mapped[Optional[str]] = mapped_column("metadata", Text)
