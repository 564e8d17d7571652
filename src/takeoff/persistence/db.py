"""Database connectivity for the SQL calculation store.

Environment Variables:
    TAKEOFF_DATABASE_URL: SQLAlchemy URL of the calculation store
        (e.g. postgresql://..., sqlite:///var/takeoff.sqlite3).

When the variable is unset the engine runs on the in-memory store.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from sqlalchemy import create_engine

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

TAKEOFF_DATABASE_URL_ENV = "TAKEOFF_DATABASE_URL"

_engine: Engine | None = None


class DatabaseConfigError(Exception):
    """Raised when database configuration is missing or invalid.

    This is a fail-closed error - operations requiring the database
    should not proceed without valid configuration.
    """

    pass


def is_database_configured() -> bool:
    """Check if a database is configured via environment.

    Returns:
        True if TAKEOFF_DATABASE_URL is set, False otherwise.
    """
    return bool(os.environ.get(TAKEOFF_DATABASE_URL_ENV))


def _normalize_url(url: str) -> str:
    """Map the legacy postgres:// scheme onto SQLAlchemy's postgresql://."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_url() -> str:
    """Get the database URL from environment.

    Raises:
        DatabaseConfigError: If TAKEOFF_DATABASE_URL is not set.
    """
    url = os.environ.get(TAKEOFF_DATABASE_URL_ENV)
    if not url:
        raise DatabaseConfigError(
            f"Database URL not configured. Set {TAKEOFF_DATABASE_URL_ENV} environment variable."
        )
    return _normalize_url(url)


def create_store_engine(url: str) -> Engine:
    """Create an engine suitable for the calculation store.

    SQLite connections are shared across worker threads, so the
    same-thread check is disabled; writes are serialized per project above.
    """
    url = _normalize_url(url)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(url, pool_size=5, max_overflow=10, pool_pre_ping=True, echo=False)


def get_engine() -> Engine:
    """Get or create the process-wide engine from TAKEOFF_DATABASE_URL.

    Raises:
        DatabaseConfigError: If TAKEOFF_DATABASE_URL is not set.
    """
    global _engine

    if _engine is None:
        _engine = create_store_engine(get_database_url())
        logger.info("Created calculation store database engine")

    return _engine


def reset_engine() -> None:
    """Dispose and forget the cached engine. For testing only."""
    global _engine

    if _engine is not None:
        _engine.dispose()
    _engine = None
