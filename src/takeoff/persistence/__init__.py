"""Storage backends for the calculation ledger and results."""

from __future__ import annotations

import logging

from takeoff.persistence.db import get_engine, is_database_configured
from takeoff.persistence.sql_store import SqlCalculationStore
from takeoff.persistence.store import CalculationStore, InMemoryCalculationStore

logger = logging.getLogger(__name__)


def get_calculation_store() -> CalculationStore:
    """SQL store when TAKEOFF_DATABASE_URL is set, otherwise a fresh in-memory store."""
    if is_database_configured():
        return SqlCalculationStore(get_engine())
    logger.warning("TAKEOFF_DATABASE_URL not set; using in-memory calculation store")
    return InMemoryCalculationStore()


__all__ = [
    "CalculationStore",
    "InMemoryCalculationStore",
    "SqlCalculationStore",
    "get_calculation_store",
]
