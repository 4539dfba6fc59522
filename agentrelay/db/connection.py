"""Database connection management for the agent relay.

Provides synchronous database access using SQLAlchemy. Supports SQLite for
development with a PostgreSQL migration path for production.

Usage:
    # FastAPI Depends
    from agentrelay.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())

    # Background workers
    with get_db_context() as db:
        ...
"""

import logging
import os
from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from agentrelay.db.models import Base

logger = logging.getLogger(__name__)

# Factory of commit-on-exit sessions, e.g. get_db_context
SessionScope = Callable[[], AbstractContextManager[Session]]


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. AGENTRELAY_DB_PATH (converted to sqlite URL)
    3. sqlite:///<user data dir>/agentrelay.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("AGENTRELAY_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from agentrelay.utils.paths import get_default_db_path
    return f"sqlite:///{get_default_db_path()}"


# Engine creation
SQLITE_BUSY_TIMEOUT_MS = 5000
DATABASE_URL = get_database_url()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False}
    if DATABASE_URL.startswith("sqlite")
    else {},
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers with a single writer, so the poll
      endpoint and background delivery tasks do not block each other.
    - synchronous=NORMAL: Commits are durable after WAL fsync.
    - busy_timeout: Writers wait for the lock instead of failing at once.
    """
    if DATABASE_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
        cursor.close()


SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for request-scoped use with Depends().

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

    Commits on clean exit, rolls back on error.

    Usage:
        with get_db_context() as db:
            event = db.get(AgentEvent, event_id)
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


def make_session_context(factory: sessionmaker) -> SessionScope:
    """Build a get_db_context()-style context manager for another factory.

    Used by tests and the CLI to point background workers at a specific
    engine.
    """

    @contextmanager
    def _context() -> Generator[Session, None, None]:
        db = factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return _context


def init_db(bind: Any = None) -> None:
    """Create all database tables.

    Safe to call multiple times - will not recreate existing tables.

    Args:
        bind: Engine to initialise (defaults to the module engine).
    """
    target = bind if bind is not None else engine
    Base.metadata.create_all(bind=target)


def close_db() -> None:
    """Close the engine and dispose of the connection pool."""
    engine.dispose()
