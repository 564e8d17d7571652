"""Takeoff FastAPI application factory.

This module provides the create_app() factory for bootstrapping the API.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from takeoff import __version__
from takeoff.api.errors import (
    TakeoffHttpError,
    engine_error_handler,
    generic_exception_handler,
    http_exception_handler,
    request_validation_error_handler,
    takeoff_http_error_handler,
)
from takeoff.api.middleware import RequestIdMiddleware
from takeoff.api.routes.calculations import router as calculations_router
from takeoff.api.routes.formulas import router as formulas_router
from takeoff.api.routes.health import router as health_router
from takeoff.api.routes.ledger import router as ledger_router
from takeoff.calc.engine import AssemblyCalculator
from takeoff.calc.formulas.loader import load_formula_definitions
from takeoff.calc.formulas.registry import FormulaRegistry
from takeoff.errors import EngineError
from takeoff.ledger.ledger import CalculationLedger
from takeoff.orchestrator import QuantityOrchestrator
from takeoff.persistence import get_calculation_store

logger = logging.getLogger(__name__)


def build_default_orchestrator() -> QuantityOrchestrator:
    """Orchestrator wired from the environment.

    Formulas come from TAKEOFF_FORMULAS_PATH (or the packaged core set) and
    storage from TAKEOFF_DATABASE_URL (or in-memory).
    """
    registry = FormulaRegistry()
    registry.register_all(load_formula_definitions())
    ledger = CalculationLedger(get_calculation_store())
    return QuantityOrchestrator(AssemblyCalculator(), ledger, registry=registry)


def create_app(orchestrator: QuantityOrchestrator | None = None) -> FastAPI:
    """Create and configure the Takeoff FastAPI application.

    Args:
        orchestrator: Optional orchestrator for testing. If None, one is
            built from the environment.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="Takeoff Quantity Engine",
        description="Deterministic quantity calculation with a hash-chained audit ledger",
        version=__version__,
    )

    app.state.orchestrator = (
        orchestrator if orchestrator is not None else build_default_orchestrator()
    )

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(TakeoffHttpError, takeoff_http_error_handler)
    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health_router)
    app.include_router(formulas_router)
    app.include_router(calculations_router)
    app.include_router(ledger_router)

    logger.info(
        "Created API with %d formulas",
        len(app.state.orchestrator.registry.list_registered()),
    )
    return app
