"""Quantity value object: a Decimal amount with a unit tag."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Quantity(BaseModel):
    """A numeric value with its unit.

    Floats are accepted at the boundary but converted through their string
    form so 0.1 becomes Decimal("0.1"), not its binary expansion.
    """

    value: Decimal = Field(..., description="Numeric amount")
    unit: str = Field(..., min_length=1, description="Unit tag (e.g., m, m2, each)")

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("value", mode="before")
    @classmethod
    def _float_via_str(cls, v: Any) -> Any:
        if isinstance(v, float):
            return Decimal(repr(v))
        return v

    @classmethod
    def of(cls, value: Decimal | int | float | str, unit: str) -> Quantity:
        """Shorthand constructor."""
        return cls(value=value, unit=unit)


InputSet = dict[str, Quantity]
"""Parameter name -> quantity, supplied per calculation."""
