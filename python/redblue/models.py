"""Database models for the counter service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

VALID_COLORS = ("red", "blue")

_COLOR_CHECK = "color IN ('red', 'blue')"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Counter(Base):
    """One durable counter per color."""

    __tablename__ = "counters"
    __table_args__ = (CheckConstraint(_COLOR_CHECK, name="ck_counters_color"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    color: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Counter(color={self.color}, count={self.count})>"


class CounterHistory(Base):
    """Append-only audit row for one counter mutation."""

    __tablename__ = "counter_history"
    __table_args__ = (
        CheckConstraint(_COLOR_CHECK, name="ck_counter_history_color"),
        Index("idx_counter_history_color", "color"),
        Index("idx_counter_history_timestamp", "timestamp"),
        Index("idx_counter_history_session", "session_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    color: Mapped[str] = mapped_column(String(10), nullable=False)
    previous_count: Mapped[int] = mapped_column(Integer, nullable=False)
    new_count: Mapped[int] = mapped_column(Integer, nullable=False)
    increment_amount: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    client_info: Mapped[dict[str, Any] | None] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CounterHistory(color={self.color}, {self.previous_count}"
            f"->{self.new_count})>"
        )


class MigrationRecord(Base):
    """Ledger row for an applied schema migration."""

    __tablename__ = "migrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
