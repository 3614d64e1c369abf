"""Counter storage: atomic increments, resets, snapshots and analytics.

Every public method runs in a single transaction. Increments lock the
target counter row (``SELECT ... FOR UPDATE`` on PostgreSQL, an immediate
write lock on SQLite) so concurrent increments on one color serialise
without lost updates, and each mutation appends its history row inside
the same transaction.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Generator

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope
from .errors import NotFoundError, StorageError, ValidationError
from .logger import get_logger
from .models import Counter, CounterHistory, utcnow

logger = get_logger(__name__)

DEFAULT_TIME_RANGE = "24 hours"
MAX_HISTORY_LIMIT = 1000

TIME_RANGES: dict[str, timedelta] = {
    "1 hour": timedelta(hours=1),
    "24 hours": timedelta(hours=24),
    "7 days": timedelta(days=7),
    "30 days": timedelta(days=30),
    "1 year": timedelta(days=365),
}


def resolve_time_range(time_range: str | None) -> timedelta:
    """Map a window label to a duration; unknown labels get the 24 hour window."""
    return TIME_RANGES.get(time_range or DEFAULT_TIME_RANGE, TIME_RANGES[DEFAULT_TIME_RANGE])


def isoformat(value: datetime | None) -> str | None:
    """Render a stored (naive UTC) timestamp as ISO-8601 with offset."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


@dataclass(frozen=True)
class IncrementResult:
    color: str
    previous_count: int
    new_count: int
    increment_by: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "color": self.color,
            "previousCount": self.previous_count,
            "newCount": self.new_count,
            "incrementBy": self.increment_by,
            "timestamp": isoformat(self.timestamp),
        }


@dataclass(frozen=True)
class ResetResult:
    previous_counts: dict[str, int]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": "All counters reset to zero",
            "previousCounts": dict(self.previous_counts),
            "timestamp": isoformat(self.timestamp),
        }


@dataclass(frozen=True)
class CounterSnapshot:
    counters: dict[str, int]
    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "lastUpdated": isoformat(self.last_updated),
        }


@dataclass(frozen=True)
class ColorStats:
    color: str
    current_count: int
    total_increments: int = 0
    total_increment_amount: int = 0
    avg_increment: float = 0.0
    first_increment_at: datetime | None = None
    last_increment_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "color": self.color,
            "currentCount": self.current_count,
            "totalIncrements": self.total_increments,
            "totalIncrementAmount": self.total_increment_amount,
            "avgIncrement": self.avg_increment,
            "firstIncrementAt": isoformat(self.first_increment_at),
            "lastIncrementAt": isoformat(self.last_increment_at),
        }


@dataclass(frozen=True)
class StatsReport:
    time_range: str
    stats: list[ColorStats]
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeRange": self.time_range,
            "stats": [stat.to_dict() for stat in self.stats],
            "generatedAt": isoformat(self.generated_at),
        }


@dataclass(frozen=True)
class HistoryEntry:
    id: int
    color: str
    previous_count: int
    new_count: int
    increment_amount: int
    client_info: dict[str, Any] | None
    timestamp: datetime
    session_id: str | None

    @classmethod
    def from_row(cls, row: CounterHistory) -> "HistoryEntry":
        return cls(
            id=row.id,
            color=row.color,
            previous_count=row.previous_count,
            new_count=row.new_count,
            increment_amount=row.increment_amount,
            client_info=row.client_info,
            timestamp=row.timestamp,
            session_id=row.session_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "color": self.color,
            "previousCount": self.previous_count,
            "newCount": self.new_count,
            "incrementAmount": self.increment_amount,
            "clientInfo": self.client_info,
            "timestamp": isoformat(self.timestamp),
            "sessionId": self.session_id,
        }


@dataclass(frozen=True)
class HistoryPage:
    entries: list[HistoryEntry]
    limit: int
    offset: int
    total_count: int

    @property
    def has_more(self) -> bool:
        # limit=0 pages are always final
        return self.limit > 0 and self.offset + self.limit < self.total_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "history": [entry.to_dict() for entry in self.entries],
            "pagination": {
                "limit": self.limit,
                "offset": self.offset,
                "totalCount": self.total_count,
                "hasMore": self.has_more,
            },
        }


class CounterStore:
    """Owns durable counter state and history."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self, action: str) -> Generator[Session, None, None]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Storage failure while trying to %s: %s", action, exc)
            raise StorageError(f"Failed to {action}", details=str(exc)) from exc

    def increment(
        self,
        color: str,
        amount: int = 1,
        *,
        client_info: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> IncrementResult:
        """Atomically add ``amount`` to a counter and record the change.

        Raises:
            ValidationError: amount is not a positive integer
            NotFoundError: no counter row exists for ``color``
            StorageError: the transaction failed and was rolled back
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise ValidationError("Increment amount must be a positive integer")

        with self._transaction(f"increment {color} counter") as session:
            counter = session.execute(
                select(Counter).where(Counter.color == color).with_for_update()
            ).scalar_one_or_none()
            if counter is None:
                raise NotFoundError(f"Counter for color '{color}' not found")

            previous_count = counter.count
            new_count = previous_count + amount
            now = utcnow()

            counter.count = new_count
            counter.updated_at = now
            session.add(
                CounterHistory(
                    color=color,
                    previous_count=previous_count,
                    new_count=new_count,
                    increment_amount=amount,
                    client_info=client_info,
                    session_id=session_id,
                    timestamp=now,
                )
            )

        return IncrementResult(
            color=color,
            previous_count=previous_count,
            new_count=new_count,
            increment_by=amount,
            timestamp=now,
        )

    def reset(self, *, client_info: dict[str, Any] | None = None) -> ResetResult:
        """Set every counter to zero, recording one history row per color.

        All counters reset or none do.
        """
        info = {"action": "reset", **(client_info or {})}

        with self._transaction("reset counters") as session:
            counters = session.execute(
                select(Counter).order_by(Counter.color).with_for_update()
            ).scalars().all()
            now = utcnow()
            previous_counts: dict[str, int] = {}

            for counter in counters:
                previous_counts[counter.color] = counter.count
                session.add(
                    CounterHistory(
                        color=counter.color,
                        previous_count=counter.count,
                        new_count=0,
                        increment_amount=-counter.count,
                        client_info=info,
                        timestamp=now,
                    )
                )
                counter.count = 0
                counter.updated_at = now

        return ResetResult(previous_counts=previous_counts, timestamp=now)

    def read(self) -> CounterSnapshot:
        """Return every counter value and the most recent update time."""
        with self._transaction("fetch counter values") as session:
            rows = session.execute(
                select(Counter.color, Counter.count, Counter.updated_at).order_by(Counter.color)
            ).all()

        return CounterSnapshot(
            counters={row.color: row.count for row in rows},
            last_updated=max((row.updated_at for row in rows), default=None),
        )

    def query_stats(self, time_range: str | None = DEFAULT_TIME_RANGE) -> StatsReport:
        """Aggregate history inside the window and join it with live values."""
        label = time_range or DEFAULT_TIME_RANGE
        cutoff = utcnow() - resolve_time_range(label)

        window = (
            select(
                CounterHistory.color.label("color"),
                func.count(CounterHistory.id).label("total_increments"),
                func.sum(CounterHistory.increment_amount).label("total_increment_amount"),
                func.avg(CounterHistory.increment_amount).label("avg_increment"),
                func.min(CounterHistory.timestamp).label("first_increment_at"),
                func.max(CounterHistory.timestamp).label("last_increment_at"),
            )
            .where(CounterHistory.timestamp >= cutoff)
            .group_by(CounterHistory.color)
            .subquery()
        )
        stmt = (
            select(
                Counter.color,
                Counter.count,
                window.c.total_increments,
                window.c.total_increment_amount,
                window.c.avg_increment,
                window.c.first_increment_at,
                window.c.last_increment_at,
            )
            .outerjoin(window, window.c.color == Counter.color)
            .order_by(Counter.color)
        )

        with self._transaction("fetch counter statistics") as session:
            rows = session.execute(stmt).all()

        stats = [
            ColorStats(
                color=row.color,
                current_count=row.count,
                total_increments=int(row.total_increments or 0),
                total_increment_amount=int(row.total_increment_amount or 0),
                avg_increment=float(row.avg_increment or 0),
                first_increment_at=row.first_increment_at,
                last_increment_at=row.last_increment_at,
            )
            for row in rows
        ]
        return StatsReport(time_range=label, stats=stats)

    def query_history(
        self,
        *,
        color: str | None = None,
        limit: int = 100,
        offset: int = 0,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> HistoryPage:
        """Return one page of history, most recent first.

        ``limit`` is clamped to ``MAX_HISTORY_LIMIT`` and ``offset`` to zero.
        """
        limit = max(0, min(limit, MAX_HISTORY_LIMIT))
        offset = max(offset, 0)

        filters = []
        if color:
            filters.append(CounterHistory.color == color)
        if start_date is not None:
            filters.append(CounterHistory.timestamp >= start_date)
        if end_date is not None:
            filters.append(CounterHistory.timestamp <= end_date)

        with self._transaction("fetch counter history") as session:
            rows = session.execute(
                select(CounterHistory)
                .where(*filters)
                .order_by(CounterHistory.timestamp.desc(), CounterHistory.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            total_count = session.execute(
                select(func.count()).select_from(CounterHistory).where(*filters)
            ).scalar_one()
            entries = [HistoryEntry.from_row(row) for row in rows]

        return HistoryPage(entries=entries, limit=limit, offset=offset, total_count=total_count)

    def health_check(self) -> dict[str, Any]:
        try:
            with session_scope(self._session_factory) as session:
                session.execute(select(Counter.id).limit(1))
            return {"status": "healthy"}
        except SQLAlchemyError as exc:
            return {"status": "unhealthy", "error": str(exc)}
