"""Assembly Calculator: formula + inputs -> CalculationResult.

Validates inputs against a formula's declared requirements, normalizes
units, evaluates the restricted expression, and assembles an immutable
result with a step-by-step breakdown and a reproducibility hash.
All arithmetic uses Decimal exclusively.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from takeoff import __version__
from takeoff.calc.expression import compile_expression
from takeoff.calc.units import convert, in_range
from takeoff.errors import (
    CalculationError,
    ConversionRangeError,
    ReproducibilityError,
    SecurityError,
    UnitError,
    ValidationError,
)
from takeoff.hashing import canonical_json_for_hash, compute_sha256
from takeoff.models.calculation_result import CalculationResult, CalculationStep
from takeoff.models.formula_definition import FormulaDefinition
from takeoff.models.quantity import Quantity

logger = logging.getLogger(__name__)


class AssemblyCalculator:
    """Deterministic calculator for formula definitions.

    Stateless: the same formula with the same normalized inputs always
    produces a bit-identical amount, step list and reproducibility hash.
    Only result_id and created_at differ between runs.
    """

    def __init__(self, code_version: str | None = None) -> None:
        """Initialize the calculator.

        Args:
            code_version: Code version string recorded in the reproducibility
                hash. Defaults to the module __version__.
        """
        self._code_version = code_version or __version__

    @property
    def code_version(self) -> str:
        return self._code_version

    def calculate(
        self,
        formula: FormulaDefinition,
        inputs: Mapping[str, Quantity],
        *,
        project_id: str,
        element_id: str,
    ) -> CalculationResult:
        """Evaluate a formula for one element.

        Args:
            formula: Definition to evaluate.
            inputs: Parameter name -> Quantity. Names not declared by the
                formula are ignored.
            project_id: Project owning the element.
            element_id: Element the quantity is computed for.

        Returns:
            CalculationResult with amount quantized to formula.output_precision.

        Raises:
            ValidationError: Missing inputs, unit mismatches or out-of-range values.
            SecurityError: Expression fails the restricted grammar.
            CalculationError: Non-finite, negative or undefined result.
        """
        normalized = self._normalize_inputs(formula, inputs)
        amount = self._evaluate(formula, normalized)

        steps = [
            CalculationStep(label=req.name, value=normalized[req.name], unit=req.unit)
            for req in formula.inputs
        ]
        steps.append(
            CalculationStep(
                label=formula.expression,
                value=amount,
                unit=formula.output_unit,
                expression=formula.expression,
            )
        )

        used_inputs = {
            req.name: Quantity(value=normalized[req.name], unit=req.unit) for req in formula.inputs
        }

        result = CalculationResult(
            result_id=str(uuid.uuid4()),
            project_id=project_id,
            element_id=element_id,
            formula_id=formula.formula_id,
            formula_version=formula.version,
            formula_hash=formula.formula_hash,
            amount=amount,
            unit=formula.output_unit,
            steps=tuple(steps),
            inputs=used_inputs,
            reproducibility_hash=self._compute_reproducibility_hash(
                formula, normalized, amount, self._code_version
            ),
            created_at=datetime.now(UTC),
        )
        logger.debug(
            "Calculated %s for element %s: %s %s",
            formula.formula_id,
            element_id,
            result.amount,
            result.unit,
        )
        return result

    def verify_reproducibility(
        self, result: CalculationResult, formula: FormulaDefinition
    ) -> None:
        """Re-run a stored result from its recorded inputs and compare hashes.

        Raises:
            ReproducibilityError: If the formula hash or the recomputed
                reproducibility hash does not match (tamper or drift).
        """
        if result.formula_hash != formula.formula_hash:
            raise ReproducibilityError(
                result.result_id, result.formula_hash, formula.formula_hash
            )

        normalized = self._normalize_inputs(formula, result.inputs)
        amount = self._evaluate(formula, normalized)
        computed_hash = self._compute_reproducibility_hash(
            formula, normalized, amount, self._code_version
        )
        if computed_hash != result.reproducibility_hash:
            raise ReproducibilityError(
                result.result_id, result.reproducibility_hash, computed_hash
            )

    def _normalize_inputs(
        self,
        formula: FormulaDefinition,
        inputs: Mapping[str, Quantity],
    ) -> dict[str, Decimal]:
        """Check presence, units and bounds; return values in expected units.

        Collects every problem before raising so the caller can fix all of
        them at once.

        Raises:
            ValidationError: Listing every missing name and every violation.
        """
        missing = [name for name in formula.required_inputs if name not in inputs]
        violations: list[dict[str, Any]] = []
        normalized: dict[str, Decimal] = {}

        for req in formula.inputs:
            supplied = inputs.get(req.name)
            if supplied is None:
                if req.default is None:
                    continue
                supplied = req.default

            value = supplied.value
            if not value.is_finite():
                violations.append(
                    {"input": req.name, "reason": "non_finite", "value": str(value)}
                )
                continue
            if not in_range(value):
                violations.append(
                    {"input": req.name, "reason": "magnitude", "value": str(value)}
                )
                continue

            try:
                value = convert(value, supplied.unit, req.unit)
            except ConversionRangeError:
                violations.append(
                    {"input": req.name, "reason": "magnitude", "value": str(value)}
                )
                continue
            except UnitError as e:
                violations.append(
                    {
                        "expected_unit": req.unit,
                        "input": req.name,
                        "reason": "unit",
                        "supplied_unit": supplied.unit,
                        "detail": e.message,
                    }
                )
                continue

            if req.violates(value):
                violations.append(
                    {
                        "constraint": req.constraint_text(),
                        "input": req.name,
                        "reason": "out_of_range",
                        "value": str(value),
                    }
                )
                continue

            normalized[req.name] = value

        if missing or violations:
            parts = []
            if missing:
                parts.append(f"missing required inputs: {missing}")
            for v in violations:
                if v["reason"] == "out_of_range":
                    parts.append(f"{v['input']} must satisfy {v['constraint']} (got {v['value']})")
                elif v["reason"] == "unit":
                    parts.append(
                        f"{v['input']} supplied in {v['supplied_unit']}, "
                        f"expected {v['expected_unit']}"
                    )
                elif v["reason"] == "magnitude":
                    parts.append(f"{v['input']} is outside the supported magnitude range")
                else:
                    parts.append(f"{v['input']} is not a finite number")
            raise ValidationError(
                f"Invalid inputs for {formula.formula_id}: " + "; ".join(parts),
                formula_id=formula.formula_id,
                missing=missing,
                violations=violations,
                context={"inputs": _snapshot(inputs)},
            )

        return normalized

    def _evaluate(self, formula: FormulaDefinition, normalized: dict[str, Decimal]) -> Decimal:
        try:
            compiled = compile_expression(formula.expression)
            raw = compiled.evaluate(normalized)
        except (SecurityError, CalculationError) as e:
            e.formula_id = formula.formula_id
            e.context.setdefault("step_index", len(formula.inputs))
            raise

        try:
            amount = raw.quantize(
                Decimal(1).scaleb(-formula.output_precision), rounding=ROUND_HALF_UP
            )
        except InvalidOperation as e:
            raise CalculationError(
                "Result exceeds representable precision",
                formula_id=formula.formula_id,
                context={
                    "expression": formula.expression,
                    "result": str(raw),
                    "step_index": len(formula.inputs),
                    "variables": {k: str(v) for k, v in sorted(normalized.items())},
                },
            ) from e
        return amount

    @staticmethod
    def _compute_reproducibility_hash(
        formula: FormulaDefinition,
        normalized: Mapping[str, Decimal],
        amount: Decimal,
        code_version: str,
    ) -> str:
        """Hash of everything that determines the amount.

        Hash is computed from canonical JSON of all deterministic inputs/outputs.
        """
        hash_input = {
            "amount": str(amount),
            "code_version": code_version,
            "formula_hash": formula.formula_hash,
            "formula_id": formula.formula_id,
            "inputs": {k: str(v) for k, v in sorted(normalized.items())},
            "unit": formula.output_unit,
        }
        return compute_sha256(canonical_json_for_hash(hash_input))


def _snapshot(inputs: Mapping[str, Quantity]) -> dict[str, dict[str, str]]:
    return {
        name: {"unit": q.unit, "value": str(q.value)} for name, q in sorted(inputs.items())
    }

