"""Database connection management for AgentDesk.

Provides synchronous database access using SQLAlchemy. The async session
layer reaches it through ``asyncio.to_thread`` so the event loop never
blocks on SQLite I/O.

Usage:
    # Sync (for FastAPI Depends)
    from agentdesk.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from agentdesk.config import get_database_url, get_sql_echo
from agentdesk.db.models import Base

DATABASE_URL = get_database_url()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False}
    if DATABASE_URL.startswith("sqlite")
    else {},
    echo=get_sql_echo(),
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers with a single writer, needed when
      several connections start sessions against the same file.
    - synchronous=NORMAL: Commits are durable after WAL fsync.
    """
    if DATABASE_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.close()


SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for synchronous operations.

    Intended for use with FastAPI's Depends() for request-scoped sessions.

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            link = db.query(AgentLink).first()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """Create all database tables synchronously.

    Safe to call multiple times - will not recreate existing tables.
    """
    Base.metadata.create_all(bind=engine)


def close_db() -> None:
    """Close the sync engine and dispose of connection pool."""
    engine.dispose()
