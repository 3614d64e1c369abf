"""Schema migrations with a version ledger.

Each migration is applied in its own transaction and recorded in the
``migrations`` table so restarts only run what is pending.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Connection, Engine

from .logger import get_logger
from .models import VALID_COLORS, Counter, CounterHistory, MigrationRecord, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    """One schema step."""

    version: str
    name: str
    up: Callable[[Connection], None]
    down: Callable[[Connection], None]


def _create_counters_table(conn: Connection) -> None:
    Counter.__table__.create(conn, checkfirst=True)

    existing = set(conn.execute(select(Counter.color)).scalars())
    now = utcnow()
    missing = [
        {"color": color, "count": 0, "created_at": now, "updated_at": now}
        for color in VALID_COLORS
        if color not in existing
    ]
    if missing:
        conn.execute(insert(Counter), missing)


def _drop_counters_table(conn: Connection) -> None:
    Counter.__table__.drop(conn, checkfirst=True)


def _create_counter_history_table(conn: Connection) -> None:
    CounterHistory.__table__.create(conn, checkfirst=True)


def _drop_counter_history_table(conn: Connection) -> None:
    CounterHistory.__table__.drop(conn, checkfirst=True)


MIGRATIONS: tuple[Migration, ...] = (
    Migration("001", "create_counters_table", _create_counters_table, _drop_counters_table),
    Migration(
        "002",
        "create_counter_history_table",
        _create_counter_history_table,
        _drop_counter_history_table,
    ),
)


class MigrationManager:
    """Applies and rolls back schema migrations against an engine."""

    def __init__(self, engine: Engine, migrations: tuple[Migration, ...] = MIGRATIONS):
        self._engine = engine
        self._migrations = migrations

    def _ensure_ledger(self) -> None:
        with self._engine.begin() as conn:
            MigrationRecord.__table__.create(conn, checkfirst=True)

    def applied_versions(self) -> list[str]:
        """Return applied migration versions in the order they were applied."""
        self._ensure_ledger()
        with self._engine.begin() as conn:
            rows = conn.execute(
                select(MigrationRecord.version).order_by(
                    MigrationRecord.applied_at, MigrationRecord.id
                )
            )
            return list(rows.scalars())

    def migrate(self) -> list[str]:
        """Run all pending migrations.

        Returns:
            Versions applied by this call (empty if the schema was current)
        """
        logger.info("Starting database migrations")
        applied = set(self.applied_versions())
        ran: list[str] = []

        for migration in self._migrations:
            if migration.version in applied:
                continue
            logger.info("Running migration %s: %s", migration.version, migration.name)
            with self._engine.begin() as conn:
                migration.up(conn)
                conn.execute(
                    insert(MigrationRecord).values(
                        version=migration.version,
                        name=migration.name,
                        applied_at=utcnow(),
                    )
                )
            ran.append(migration.version)

        logger.info("Migrations complete (%d applied)", len(ran))
        return ran

    def rollback(self, target_version: str) -> list[str]:
        """Roll back every applied migration newer than ``target_version``.

        Returns:
            Versions rolled back, newest first
        """
        logger.info("Rolling back to migration version %s", target_version)
        applied = set(self.applied_versions())
        rolled_back: list[str] = []

        for migration in reversed(self._migrations):
            if migration.version not in applied or migration.version <= target_version:
                continue
            logger.info("Rolling back migration %s", migration.version)
            with self._engine.begin() as conn:
                migration.down(conn)
                conn.execute(
                    delete(MigrationRecord).where(
                        MigrationRecord.version == migration.version
                    )
                )
            rolled_back.append(migration.version)

        return rolled_back
