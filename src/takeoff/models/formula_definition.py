"""FormulaDefinition model: a named, versioned arithmetic expression.

Definitions are supplied by configuration loading and are read-only to the
engine. A definition is immutable once referenced by any calculation; a
changed expression gets a new formula_id or version.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from takeoff.calc.expression import RESERVED_NAMES
from takeoff.calc.units import normalize_unit
from takeoff.errors import UnknownUnitError
from takeoff.hashing import canonical_json_for_hash, compute_sha256
from takeoff.models.quantity import Quantity

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _canonical_unit(unit: str) -> str:
    try:
        return normalize_unit(unit)
    except UnknownUnitError as e:
        raise ValueError(e.message) from e


class InputRequirement(BaseModel):
    """A declared formula input with its expected unit and numeric bounds.

    Bounds are checked after the supplied value has been normalized to
    the expected unit.
    """

    name: str = Field(..., description="Variable name used in the expression")
    unit: str = Field(..., description="Unit the formula expects")
    min_value: Decimal | None = Field(None, description="Lower bound")
    min_exclusive: bool = Field(False, description="Lower bound excludes min_value")
    max_value: Decimal | None = Field(None, description="Upper bound")
    max_exclusive: bool = Field(False, description="Upper bound excludes max_value")
    default: Quantity | None = Field(
        None, description="Value used when the input is not supplied; makes it optional"
    )
    description: str = ""

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("name")
    @classmethod
    def _valid_identifier(cls, v: str) -> str:
        if not _IDENTIFIER_PATTERN.match(v):
            raise ValueError(f"input name {v!r} is not a valid identifier")
        if v in RESERVED_NAMES:
            raise ValueError(f"input name {v!r} shadows a built-in constant or function")
        return v

    @field_validator("unit")
    @classmethod
    def _supported_unit(cls, v: str) -> str:
        return _canonical_unit(v)

    @property
    def required(self) -> bool:
        return self.default is None

    def constraint_text(self) -> str | None:
        """Human-readable bounds, e.g. "length > 0"."""
        parts: list[str] = []
        if self.min_value is not None:
            op = ">" if self.min_exclusive else ">="
            parts.append(f"{self.name} {op} {self.min_value}")
        if self.max_value is not None:
            op = "<" if self.max_exclusive else "<="
            parts.append(f"{self.name} {op} {self.max_value}")
        return " and ".join(parts) if parts else None

    def violates(self, value: Decimal) -> bool:
        """True if value is outside the declared bounds."""
        if self.min_value is not None:
            if value < self.min_value or (self.min_exclusive and value == self.min_value):
                return True
        if self.max_value is not None:
            if value > self.max_value or (self.max_exclusive and value == self.max_value):
                return True
        return False


class FormulaDefinition(BaseModel):
    """A named arithmetic expression producing one quantity in a declared unit."""

    formula_id: str = Field(..., min_length=1, description="Stable identifier")
    version: str = Field("1.0.0", description="Semantic version of the definition")
    description: str = Field("", description="Human-readable description")
    expression: str = Field(..., min_length=1, description="Restricted arithmetic expression")
    inputs: tuple[InputRequirement, ...] = Field(default_factory=tuple)
    output_unit: str = Field(..., description="Unit of the computed amount")
    output_precision: int = Field(4, ge=0, le=12, description="Decimal places of the amount")
    classifications: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Element classifications this formula applies to",
    )

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("output_unit")
    @classmethod
    def _supported_output_unit(cls, v: str) -> str:
        return _canonical_unit(v)

    @model_validator(mode="after")
    def _unique_input_names(self) -> FormulaDefinition:
        names = [req.name for req in self.inputs]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate input names: {duplicates}")
        return self

    @property
    def required_inputs(self) -> tuple[str, ...]:
        """Names of inputs without a default, in declared order."""
        return tuple(req.name for req in self.inputs if req.required)

    @property
    def input_names(self) -> tuple[str, ...]:
        return tuple(req.name for req in self.inputs)

    def requirement(self, name: str) -> InputRequirement:
        for req in self.inputs:
            if req.name == name:
                return req
        raise KeyError(name)

    @property
    def formula_hash(self) -> str:
        """Stable SHA256 of everything that determines the computed amount."""
        spec_dict: dict[str, Any] = {
            "expression": self.expression,
            "formula_id": self.formula_id,
            "formula_version": self.version,
            "inputs": [
                req.model_dump(mode="json", exclude={"description"}) for req in self.inputs
            ],
            "output_precision": self.output_precision,
            "output_unit": self.output_unit,
        }
        return compute_sha256(canonical_json_for_hash(spec_dict))
