"""CalculationResult model: one evaluated formula for one element.

A result is immutable once created. Recomputing the same (element, formula)
pair produces a new result; the previous one is kept, tagged SUPERSEDED.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from takeoff.models.quantity import Quantity


class ResultStatus(StrEnum):
    """Lifecycle status of a stored result."""

    LIVE = "LIVE"
    SUPERSEDED = "SUPERSEDED"


class CalculationStep(BaseModel):
    """One line of the breakdown: an input value or the final amount."""

    label: str = Field(..., description="Input name, or the formula text for the final step")
    value: Decimal = Field(..., description="Normalized value")
    unit: str = Field(..., description="Unit of value")
    expression: str | None = Field(None, description="Formula text (final step only)")

    model_config = {"frozen": True, "extra": "forbid"}


class CalculationResult(BaseModel):
    """A computed quantity with full breakdown and provenance."""

    result_id: str = Field(..., description="UUID for this result")
    project_id: str = Field(..., description="Project owning the element")
    element_id: str = Field(..., description="Building element this quantity belongs to")
    formula_id: str = Field(..., description="FormulaDefinition identifier")
    formula_version: str = Field(..., description="FormulaDefinition version")
    formula_hash: str = Field(..., description="SHA256 of the FormulaDefinition used")
    amount: Decimal = Field(..., description="Final computed amount")
    unit: str = Field(..., description="Unit of amount")
    steps: tuple[CalculationStep, ...] = Field(..., description="Ordered breakdown")
    inputs: dict[str, Quantity] = Field(..., description="Normalized inputs actually used")
    reproducibility_hash: str = Field(..., description="SHA256 of formula hash, inputs, amount")
    status: ResultStatus = Field(ResultStatus.LIVE)
    superseded_by: str | None = Field(None, description="result_id of the replacement")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("amount")
    @classmethod
    def _finite_non_negative(cls, v: Decimal) -> Decimal:
        if not v.is_finite() or v < 0:
            raise ValueError("amount must be a finite, non-negative number")
        return v

    def superseded(self, by_result_id: str) -> CalculationResult:
        """Return a copy tagged as superseded by another result."""
        return self.model_copy(
            update={"status": ResultStatus.SUPERSEDED, "superseded_by": by_result_id}
        )

    def to_event_payload(self) -> dict[str, Any]:
        """JSON-native summary recorded in the ledger."""
        return {
            "amount": str(self.amount),
            "element_id": self.element_id,
            "formula_hash": self.formula_hash,
            "formula_id": self.formula_id,
            "formula_version": self.formula_version,
            "inputs": {
                name: {"unit": q.unit, "value": str(q.value)}
                for name, q in sorted(self.inputs.items())
            },
            "reproducibility_hash": self.reproducibility_hash,
            "result_id": self.result_id,
            "steps": [
                {
                    "expression": s.expression,
                    "label": s.label,
                    "unit": s.unit,
                    "value": str(s.value),
                }
                for s in self.steps
            ],
            "unit": self.unit,
        }
