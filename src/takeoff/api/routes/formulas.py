"""Formula catalogue routes.

Provides GET /v1/formulas and GET /v1/formulas/{formula_id}.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from takeoff.api.deps import get_orchestrator
from takeoff.api.errors import TakeoffHttpError
from takeoff.models.formula_definition import FormulaDefinition

router = APIRouter(prefix="/v1", tags=["Formulas"])


class FormulaSummary(BaseModel):
    """A registered formula as exposed to clients."""

    formula_id: str
    version: str
    description: str
    expression: str
    output_unit: str
    required_inputs: list[str]
    classifications: list[str]
    formula_hash: str


class FormulaList(BaseModel):
    items: list[FormulaSummary]


def _summary(formula: FormulaDefinition) -> FormulaSummary:
    return FormulaSummary(
        formula_id=formula.formula_id,
        version=formula.version,
        description=formula.description,
        expression=formula.expression,
        output_unit=formula.output_unit,
        required_inputs=list(formula.required_inputs),
        classifications=list(formula.classifications),
        formula_hash=formula.formula_hash,
    )


@router.get("/formulas", response_model=FormulaList)
def list_formulas(
    request: Request,
    classification: str | None = Query(None, description="Only formulas for this classification"),
) -> FormulaList:
    """List registered formulas sorted by id."""
    registry = get_orchestrator(request).registry
    if classification is not None:
        formulas = registry.for_classification(classification)
    else:
        formulas = [registry.get_or_raise(fid) for fid in registry.list_registered()]
    return FormulaList(items=[_summary(f) for f in formulas])


@router.get("/formulas/{formula_id}", response_model=FormulaDefinition)
def get_formula(request: Request, formula_id: str) -> FormulaDefinition:
    """Full definition of one formula, including input bounds and defaults."""
    formula = get_orchestrator(request).registry.get(formula_id)
    if formula is None:
        raise TakeoffHttpError(
            status_code=404,
            code="FORMULA_NOT_FOUND",
            message=f"No formula registered with id: {formula_id}",
            details={"formula_id": formula_id},
        )
    return formula
