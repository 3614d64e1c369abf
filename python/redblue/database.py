"""Database engine and session helpers.

Provides the engine factory (with driver normalisation) and the
transactional session scope used by the counter store.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .logger import get_logger

logger = get_logger(__name__)


def normalize_database_url(url: str) -> str:
    """Rewrite PostgreSQL URLs so SQLAlchemy uses the psycopg (v3) driver."""

    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql+psycopg2://"):
        return url.replace("postgresql+psycopg2://", "postgresql+psycopg://", 1)
    return url


def _install_sqlite_locking(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, so two read-modify-write
    transactions can both read the same value. BEGIN IMMEDIATE serialises
    them the way SELECT ... FOR UPDATE does on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(url: str, **engine_kwargs: Any) -> Engine:
    """Create an engine for the configured database.

    Args:
        url: Database URL (PostgreSQL or SQLite)
        **engine_kwargs: Extra arguments passed to ``create_engine``

    Returns:
        Configured SQLAlchemy engine
    """
    url = normalize_database_url(url)

    if url.startswith("sqlite"):
        connect_args = engine_kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        engine = create_engine(url, connect_args=connect_args, **engine_kwargs)
        _install_sqlite_locking(engine)
    else:
        pool_defaults = {
            "pool_size": 20,
            "pool_timeout": 30,
            "pool_recycle": 1800,
        }
        for pool_key, pool_value in pool_defaults.items():
            engine_kwargs.setdefault(pool_key, pool_value)
        engine = create_engine(url, pool_pre_ping=True, **engine_kwargs)

    logger.info("Created database engine for %s", engine.url.render_as_string(hide_password=True))
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to ``engine``."""

    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Open a session that commits on success and rolls back on error.

    Usage:
        with session_scope(factory) as session:
            session.execute(...)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
