"""
Database connection and session management for Alpaka.

Provides:
- get_engine(): SQLAlchemy engine built from DATABASE_URL (created on first use)
- SessionLocal(): new session bound to that engine
- get_db(): Context manager for DB sessions
- with_retry(): retry helper for transient storage failures
"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Generator, Optional, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session

from .config import get_settings
from .core.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """
    Return the process-wide engine, creating it on first call.

    Raises:
        StorageUnavailableError: If DATABASE_URL is not configured
    """
    global _engine, _session_factory

    if _engine is None:
        database_url = get_settings().database_url
        if not database_url:
            raise StorageUnavailableError(
                "DATABASE_URL environment variable not set. "
                "Please configure it in .env file."
            )
        # pool_pre_ping=True ensures connections are valid before using them
        _engine = create_engine(database_url, pool_pre_ping=True, echo=False)
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

    return _engine


def SessionLocal() -> Session:
    """Create a new session bound to the configured engine."""
    get_engine()
    return _session_factory()


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with get_db() as db:
            job = db.query(ProcessingJob).filter(ProcessingJob.id == job_id).first()
            db.commit()

    The session is automatically closed when exiting the context,
    and rolled back if an exception occurs.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def with_retry(
    operation: Callable[[], T],
    description: str,
    max_retries: int = 3,
    base_delay: float = 1.0,
) -> T:
    """
    Run a storage operation, retrying connection errors with exponential backoff
    (1s, 2s, 4s by default).

    Raises:
        StorageUnavailableError: If every attempt failed
    """
    last_error: Optional[Exception] = None

    for attempt in range(max_retries):
        try:
            return operation()
        except OperationalError as e:
            last_error = e
            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{max_retries}), retrying in {delay}s",
                extra={"error": str(e)}
            )
            if attempt < max_retries - 1:
                time.sleep(delay)

    raise StorageUnavailableError(f"{description} failed after {max_retries} attempts: {last_error}")
