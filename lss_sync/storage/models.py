# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Database Models

SQLAlchemy models for incidents, alliance stat history, members and
the member activity log.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always reads back as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        # SQLite drops the offset
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Incident(Base):
    """A mission currently visible in one of the tracked mission lists."""

    __tablename__ = "incidents"
    __table_args__ = (
        Index("idx_incidents_source", "source"),
        Index("idx_incidents_category", "category"),
        Index("idx_incidents_status", "status"),
        Index("idx_incidents_created_at", "created_at"),
        Index("idx_incidents_last_seen_at", "last_seen_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    title: Mapped[str] = mapped_column(String(500))
    type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="active")
    source: Mapped[str] = mapped_column(String(50), default="unknown")
    category: Mapped[str] = mapped_column(String(50), default="emergency")
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Typed sub-structures (ListContext / MissionDetails)
    context: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)


class AllianceStat(Base):
    """Append-only alliance stat point."""

    __tablename__ = "alliance_stats"
    __table_args__ = (
        Index("idx_alliance_stats_alliance_recorded", "alliance_id", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alliance_id: Mapped[int] = mapped_column(Integer)
    alliance_name: Mapped[str] = mapped_column(String(255))
    credits_total: Mapped[int] = mapped_column(BigInteger)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_count: Mapped[int] = mapped_column(Integer, default=0)
    user_online_count: Mapped[int] = mapped_column(Integer, default=0)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)


class AllianceMember(Base):
    """Current state of an alliance member."""

    __tablename__ = "alliance_members"
    __table_args__ = (
        Index("idx_alliance_members_alliance", "alliance_id"),
        Index("idx_alliance_members_last_online", "last_online_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    alliance_id: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(255))
    roles: Mapped[list[str]] = mapped_column(JsonColumn, default=list)
    caption: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    role_flags: Mapped[dict[str, Any]] = mapped_column(JsonColumn, default=dict)

    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    last_online_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class MemberActivity(Base):
    """Online/offline transition of a member."""

    __tablename__ = "member_activity_log"
    __table_args__ = (
        Index("idx_member_activity_member_recorded", "member_id", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(Integer)
    is_online: Mapped[bool] = mapped_column(Boolean)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
