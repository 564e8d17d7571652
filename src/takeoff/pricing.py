"""Line item pricing of calculated quantities.

Turns a CalculationResult into a priced line item given a rate supplied by
the caller (rate lookup is someone else's job). The rate is a currency
amount per unit, tagged with a rate-basis unit such as "per_m2"; it is
normalized to the result's unit before multiplying, so a rate per ft2
prices a quantity in m2 correctly.

Rates reach this module from the calculations endpoint and from
`takeoff calculate --rate`, keyed by formula id. check_rates validates
them against each formula's output unit before anything is calculated;
outcome_dicts prices every successful outcome that has a rate.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field

from takeoff.calc.formulas.registry import FormulaRegistry
from takeoff.calc.units import RATE_PREFIX, convert, in_range
from takeoff.errors import FormulaConfigError, UnitError, ValidationError
from takeoff.models.calculation_result import CalculationResult
from takeoff.models.quantity import Quantity
from takeoff.orchestrator import FormulaOutcome

logger = logging.getLogger(__name__)

MONEY_PLACES = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")


class PricedLineItem(BaseModel):
    """A quantity priced at a rate: total = quantity * rate."""

    item: str = Field(..., description="Line item label")
    result_id: str = Field(..., description="CalculationResult the quantity came from")
    element_id: str
    formula_id: str
    quantity: Decimal = Field(..., ge=0)
    unit: str
    rate: Decimal = Field(..., ge=0, description="Currency per unit of quantity")
    rate_unit: str = Field(..., description="Rate basis, e.g. per_m2")
    total: Decimal = Field(..., ge=0, description="Rounded to 2 decimal places")

    model_config = {"frozen": True, "extra": "forbid"}


def _magnitude_violation(value: Decimal) -> dict[str, str]:
    return {"input": "rate", "reason": "magnitude", "value": str(value)}


def normalize_rate(
    rate: Quantity, unit: str, *, formula_id: str | None = None
) -> Decimal:
    """Return the rate per one `unit`, rounded half-up to 4 places.

    Raises:
        ValidationError: If the rate is negative, not finite, out of range,
            or its basis is not compatible with `unit`.
    """
    basis = RATE_PREFIX + unit
    violation: dict[str, str] | None = None
    normalized = Decimal(0)
    if not rate.value.is_finite() or rate.value < 0:
        violation = {
            "constraint": "rate >= 0",
            "input": "rate",
            "reason": "out_of_range",
            "value": str(rate.value),
        }
    elif not in_range(rate.value):
        violation = _magnitude_violation(rate.value)
    else:
        try:
            normalized = convert(rate.value, rate.unit, basis).quantize(
                RATE_PLACES, rounding=ROUND_HALF_UP
            )
        except UnitError as e:
            violation = {
                "detail": e.message,
                "expected_unit": basis,
                "input": "rate",
                "reason": "unit",
                "supplied_unit": rate.unit,
            }
        except InvalidOperation:
            violation = _magnitude_violation(rate.value)

    if violation is not None:
        raise ValidationError(
            f"Cannot price {formula_id or unit} at {rate.value} {rate.unit}",
            formula_id=formula_id,
            violations=[violation],
        )
    return normalized


def price_result(
    result: CalculationResult, rate: Quantity, item: str | None = None
) -> PricedLineItem:
    """Price a calculated quantity.

    The total is the shown quantity times the shown (4-place) rate, rounded
    half-up to cents.

    Args:
        result: The calculated quantity.
        rate: Currency amount per unit, e.g. Quantity.of("42.50", "per_m2").
        item: Line item label. Defaults to the formula id.

    Raises:
        ValidationError: If the rate is negative, not finite, its basis is
            not compatible with the result's unit, or the total is too large.
    """
    rate_value = normalize_rate(rate, result.unit, formula_id=result.formula_id)
    try:
        total = (result.amount * rate_value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValidationError(
            f"Total for {result.formula_id} at {rate.value} {rate.unit} is out of range",
            formula_id=result.formula_id,
            violations=[_magnitude_violation(rate.value)],
            context={"result_id": result.result_id},
        ) from e

    basis = RATE_PREFIX + result.unit
    logger.debug(
        "Priced %s: %s %s at %s %s = %s",
        result.result_id,
        result.amount,
        result.unit,
        rate_value,
        basis,
        total,
    )
    return PricedLineItem(
        item=item or result.formula_id,
        result_id=result.result_id,
        element_id=result.element_id,
        formula_id=result.formula_id,
        quantity=result.amount,
        unit=result.unit,
        rate=rate_value,
        rate_unit=basis,
        total=total,
    )


def check_rates(registry: FormulaRegistry, rates: Mapping[str, Quantity]) -> None:
    """Validate every rate against its formula's output unit.

    Raises:
        FormulaConfigError: If a rate names an unregistered formula.
        ValidationError: Listing every unusable rate, each tagged with its
            formula_id.
    """
    violations: list[dict[str, Any]] = []
    for formula_id, rate in sorted(rates.items()):
        formula = registry.get(formula_id)
        if formula is None:
            raise FormulaConfigError(
                f"No formula registered with id: {formula_id}", formula_id=formula_id
            )
        try:
            normalize_rate(rate, formula.output_unit, formula_id=formula_id)
        except ValidationError as e:
            violations.extend({**v, "formula_id": formula_id} for v in e.violations)
    if violations:
        raise ValidationError(
            f"Invalid rates for {sorted({v['formula_id'] for v in violations})}",
            violations=violations,
        )


def outcome_dicts(
    outcomes: Sequence[FormulaOutcome], rates: Mapping[str, Quantity]
) -> list[dict[str, Any]]:
    """Serialize outcomes with a "priced" line item where a rate was given."""
    serialized = []
    for outcome in outcomes:
        data = outcome.to_dict()
        rate = rates.get(outcome.formula_id)
        priced = None
        if rate is not None and outcome.result is not None:
            priced = price_result(outcome.result, rate).model_dump(mode="json")
        data["priced"] = priced
        serialized.append(data)
    return serialized
