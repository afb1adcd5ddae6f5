"""Declarative base and shared column types."""

import enum
from datetime import datetime
from typing import Optional, Type

from sqlalchemy import Enum
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TIMESTAMP, TypeDecorator

from app.utils.time import as_utc


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    Backends without native tz support (SQLite) hand back naive values; they
    are re-tagged as UTC so comparisons with ``utcnow()`` stay valid.
    """

    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        return as_utc(value)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        return as_utc(value)


def str_enum(enum_cls: Type[enum.Enum], name: str) -> Enum:
    """Non-native enum column storing the member values ("active", not "ACTIVE")."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )
