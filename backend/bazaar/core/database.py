"""
Database utilities and connection management.

WHAT: SQLAlchemy engine, session factory, and declarative base
WHY: Persist stock, negotiations, reservations, QR sessions and rate counters
HOW: SQLAlchemy sync engine v2; SQLite runs in WAL mode with a busy timeout
"""

from sqlalchemy import create_engine, text, event
from sqlalchemy.orm import sessionmaker, declarative_base
from contextlib import contextmanager
from pathlib import Path

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# Ensure data directory exists for file-backed SQLite
if _is_sqlite and ":memory:" not in settings.DATABASE_URL:
    data_dir = Path(settings.DATABASE_URL.replace("sqlite:///", "")).parent
    if not data_dir.exists():
        data_dir.mkdir(parents=True, exist_ok=True)

connect_args = {}
if _is_sqlite:
    connect_args = {
        "check_same_thread": False,  # Allow multi-threaded access
        "timeout": settings.DATABASE_BUSY_TIMEOUT,
    }

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=settings.DEBUG,
    future=True
)


if _is_sqlite:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        """Enable WAL mode for better concurrency."""
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Session factory
SessionLocal = sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False
)

# Base for models
Base = declarative_base()


@contextmanager
def get_db():
    """
    Context manager for database session.

    Usage:
        with get_db() as db:
            # use db session
            pass

    Yields:
        Session: SQLAlchemy session, committed on success and rolled back on error
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def use_db(db=None):
    """
    Join a caller's transaction or open a new one.

    Services accept an optional session so several core operations can share
    one transaction (e.g. a QR claim that opens a negotiation and reserves
    stock). When no session is passed, a fresh one is committed on exit.
    """
    if db is not None:
        yield db
        return
    with get_db() as session:
        yield session


def ping_database() -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with status and info
    """
    try:
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1"))
            result.fetchone()

        return {
            "available": True,
            "url": engine.url.render_as_string(hide_password=True),
            "error": None
        }
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {
            "available": False,
            "url": engine.url.render_as_string(hide_password=True),
            "error": str(e)
        }


def init_db():
    """Create all tables (and ensure WAL mode on SQLite)."""
    # Import models so they register on Base.metadata
    from . import models  # noqa: F401

    if _is_sqlite:
        with engine.connect() as conn:
            conn.execute(text("PRAGMA journal_mode=WAL"))
            conn.execute(text("PRAGMA foreign_keys=ON"))
            conn.commit()

    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized")


def close_db():
    """Close database connections."""
    engine.dispose()
    logger.info("Database connections closed")
