"""
Database utilities and connection management.

WHAT: Relational storage gateway for offers, negotiations and orders
WHY: Every engine action must run inside one atomic unit of work
HOW: SQLAlchemy sync engine v2, session factory, transactional context manager
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Callable, ContextManager

from sqlalchemy import create_engine, text, event
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# A transaction factory yields a session and commits/rolls back on exit
TransactionFactory = Callable[[], ContextManager[Session]]


def _is_sqlite_file(url: str) -> bool:
    return url.startswith("sqlite:///") and ":memory:" not in url


# Ensure data directory exists for file-backed SQLite
if _is_sqlite_file(settings.DATABASE_URL):
    data_dir = Path(settings.DATABASE_URL.replace("sqlite:///", "")).parent
    data_dir.mkdir(parents=True, exist_ok=True)

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
    echo=settings.DEBUG,
    future=True
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable WAL mode and foreign keys on SQLite connections."""
    if not settings.DATABASE_URL.startswith("sqlite"):
        return
    cursor = dbapi_conn.cursor()
    if _is_sqlite_file(settings.DATABASE_URL):
        cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False
)

# Base for models
Base = declarative_base()


def transaction_scope(session_factory: sessionmaker) -> TransactionFactory:
    """
    Build a transactional context manager around a session factory.

    WHAT: Commit-on-success / rollback-on-error unit of work
    WHY: Engines and tests share one transaction contract over any engine
    HOW: Wrap session creation in a contextmanager

    Args:
        session_factory: Configured sessionmaker

    Returns:
        Zero-argument callable returning a context manager that yields a Session
    """
    @contextmanager
    def scope():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


@contextmanager
def get_db():
    """
    Context manager for database session.

    Usage:
        with get_db() as db:
            # use db session
            pass

    Yields:
        Session: SQLAlchemy session
    """
    with transaction_scope(SessionLocal)() as session:
        yield session


def ping_database() -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with status and info
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()

        return {
            "available": True,
            "url": settings.DATABASE_URL,
            "error": None
        }
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {
            "available": False,
            "url": settings.DATABASE_URL,
            "error": str(e)
        }


def init_db():
    """Create all tables."""
    # Import models so they register on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized ({len(Base.metadata.tables)} tables)")


def close_db():
    """Close database connections."""
    engine.dispose()
    logger.info("Database connections closed")
