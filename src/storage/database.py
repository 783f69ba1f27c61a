"""Database plumbing for the fraud scoring service.

Provides the declarative base shared by all fraud records, a session factory
builder and a dialect-aware ``insert`` used for the atomic upserts that back
velocity counters, blacklist auto-creation and rule trigger deduplication.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


Clock = Callable[[], datetime]


class Base(DeclarativeBase):
    """Declarative base for every fraud detection table."""


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how rows are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine, pinning in-memory SQLite to a single connection."""
    in_memory = database_url == "sqlite://" or ":memory:" in database_url
    if database_url.startswith("sqlite") and in_memory:
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    # Registers the mapped classes on Base.metadata
    import storage.records  # noqa: F401

    Base.metadata.create_all(engine)


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker[Session]:
    """Build a session factory and make sure the schema exists."""
    engine = create_db_engine(database_url, echo=echo)
    init_db(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Transactional scope: commit on success, rollback on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dialect_insert(session: Session, table: Any) -> Any:
    """Return an ``INSERT`` construct supporting ``ON CONFLICT`` for the bound dialect.

    Parameters
    ----------
    session : Session
        Session whose bind decides the dialect.
    table : Any
        Mapped class or table to insert into.

    Raises
    ------
    ValueError
        If the database is neither SQLite nor PostgreSQL.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(table)
    if dialect == "postgresql":
        return postgresql.insert(table)
    raise ValueError(f"Atomic upserts are not supported on dialect '{dialect}'")


__all__ = [
    "Base",
    "Clock",
    "utcnow",
    "create_db_engine",
    "init_db",
    "create_session_factory",
    "session_scope",
    "dialect_insert",
]
