"""Calculation routes.

Provides:
- POST /v1/projects/{project_id}/elements/{element_id}/calculations
- GET  /v1/projects/{project_id}/elements/{element_id}/results

A calculation request always answers 200 with one outcome per formula, so a
client sees each formula's result or error without losing the others.
Request-level problems (no formulas selected, unknown formula id, unusable
rate) are rejected before anything is recorded. Successful outcomes whose
formula has a rate in the request carry a "priced" line item.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from takeoff.api.deps import get_orchestrator
from takeoff.api.errors import TakeoffHttpError
from takeoff.models.calculation_result import CalculationResult
from takeoff.models.quantity import Quantity
from takeoff.pricing import check_rates, outcome_dicts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Calculations"])


class CalculationRequest(BaseModel):
    """Body of a calculation request: resolved inputs plus formula selection."""

    inputs: dict[str, Quantity] = Field(default_factory=dict)
    formula_ids: list[str] | None = Field(None, description="Formulas to run, in order")
    classification: str | None = Field(
        None, description="Run every formula registered for this classification"
    )
    rates: dict[str, Quantity] = Field(
        default_factory=dict,
        description="Formula id -> rate (e.g. per_m2) used to price that formula's result",
    )

    model_config = {"extra": "forbid"}


class CalculationResponse(BaseModel):
    project_id: str
    element_id: str
    outcomes: list[dict[str, Any]]


class ResultList(BaseModel):
    items: list[CalculationResult]


@router.post(
    "/projects/{project_id}/elements/{element_id}/calculations",
    response_model=CalculationResponse,
)
def create_calculations(
    request: Request, project_id: str, element_id: str, body: CalculationRequest
) -> CalculationResponse:
    """Calculate quantities for an element and record every attempt."""
    if bool(body.formula_ids) == bool(body.classification):
        raise TakeoffHttpError(
            status_code=400,
            code="INVALID_REQUEST",
            message="Provide exactly one of formula_ids or classification",
        )

    orchestrator = get_orchestrator(request)
    check_rates(orchestrator.registry, body.rates)
    if body.classification:
        outcomes = orchestrator.calculate_for_classification(
            project_id, element_id, body.classification, body.inputs
        )
    else:
        outcomes = orchestrator.calculate_for_element(
            project_id, element_id, body.inputs, body.formula_ids or []
        )

    failed = [o.formula_id for o in outcomes if not o.ok]
    if failed:
        logger.info(
            "Element %s in project %s: %d of %d formulas failed",
            element_id,
            project_id,
            len(failed),
            len(outcomes),
        )
    return CalculationResponse(
        project_id=project_id,
        element_id=element_id,
        outcomes=outcome_dicts(outcomes, body.rates),
    )


@router.get("/projects/{project_id}/elements/{element_id}/results", response_model=ResultList)
def list_results(
    request: Request,
    project_id: str,
    element_id: str,
    include_superseded: bool = Query(False),
) -> ResultList:
    """Live results for an element, optionally with superseded history."""
    store = get_orchestrator(request).ledger.store
    return ResultList(
        items=store.list_results(
            project_id, element_id=element_id, include_superseded=include_superseded
        )
    )
