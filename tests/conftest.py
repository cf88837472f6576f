"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite engine and sessions (StaticPool, shared connection)
- A ``db_context`` factory matching ``get_db_context`` for the session manager
- Link factories
"""

import os
from collections.abc import Callable, Generator
from contextlib import contextmanager

# The application engine is built at import time; keep it off the working tree.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from agentdesk.db.models import AgentLink, Base, LinkType  # noqa: E402
from agentdesk.services.access_link_service import AccessLinkService  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _fk_on(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """A database session for direct service tests."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def db_context(session_factory: sessionmaker) -> Callable:
    """Transactional context factory with the semantics of get_db_context."""

    @contextmanager
    def _context() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _context


# ============================================================================
# Data Fixtures
# ============================================================================


@pytest.fixture
def make_link(db_session: Session) -> Callable[..., AgentLink]:
    """Create links through the service with sensible defaults."""

    def _make(**kwargs) -> AgentLink:
        kwargs.setdefault("business_id", "biz-1")
        kwargs.setdefault("name", "Front desk")
        kwargs.setdefault("type", LinkType.multi_use)
        return AccessLinkService(db_session).create_link(**kwargs)

    return _make
