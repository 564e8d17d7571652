"""Tests for the AssemblyCalculator.

Tests verify:
- Concrete wall-area scenario: 13.5 m2 with one step per input plus a final step
- Every missing input is listed at once
- Unit normalization and unit-class mismatches
- Range constraints are named in the error
- Out-of-range magnitudes are rejected as violations before conversion
- Determinism and reproducibility hashes
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from takeoff.calc.engine import AssemblyCalculator
from takeoff.calc.formulas.registry import FormulaRegistry
from takeoff.errors import (
    CalculationError,
    ReproducibilityError,
    SecurityError,
    UnknownIdentifierError,
    ValidationError,
)
from takeoff.models.formula_definition import FormulaDefinition, InputRequirement
from takeoff.models.quantity import Quantity

PROJECT_ID = "proj-0001"
ELEMENT_ID = "wall-north"


def _wall_inputs(**overrides: Quantity) -> dict[str, Quantity]:
    inputs = {
        "length": Quantity.of(5.0, "m"),
        "height": Quantity.of(3.0, "m"),
        "opening_area": Quantity.of(1.5, "m2"),
    }
    inputs.update(overrides)
    return inputs


class TestWallAreaScenario:
    """length * height - opening_area with 5 m, 3 m, 1.5 m2."""

    def test_amount_and_unit(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        result = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        assert result.amount == Decimal("13.5")
        assert result.unit == "m2"

    def test_steps(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        """Three input steps in declared order, then the final step."""
        result = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        assert len(result.steps) == 4
        assert [(s.label, s.value, s.unit) for s in result.steps[:3]] == [
            ("length", Decimal("5.0"), "m"),
            ("height", Decimal("3.0"), "m"),
            ("opening_area", Decimal("1.5"), "m2"),
        ]
        final = result.steps[-1]
        assert final.expression == "length * height - opening_area"
        assert final.value == result.amount
        assert final.unit == "m2"

    def test_amount_has_four_places(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        result = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        assert result.amount.as_tuple().exponent == -4

    def test_extra_inputs_are_ignored(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(colour=Quantity.of(1, "each"))
        result = calculator.calculate(
            wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        assert set(result.inputs) == {"length", "height", "opening_area"}


class TestMissingInputs:
    """Missing inputs are reported together."""

    def test_every_missing_name_listed(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                wall_area_formula,
                {"height": Quantity.of(3, "m")},
                project_id=PROJECT_ID,
                element_id=ELEMENT_ID,
            )
        assert exc_info.value.missing == ["length", "opening_area"]
        assert exc_info.value.formula_id == "test_wall_area"
        assert exc_info.value.context["inputs"] == {"height": {"unit": "m", "value": "3"}}

    def test_default_fills_optional_input(
        self, calculator: AssemblyCalculator, registry: FormulaRegistry
    ) -> None:
        """Stud count uses the 0.6 m default spacing: ceil(3 / 0.6) + 1 = 6."""
        formula = registry.get_or_raise("wall_stud_count_v1")
        result = calculator.calculate(
            formula, {"length": Quantity.of(3, "m")}, project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        assert result.amount == Decimal("6")
        assert result.inputs["spacing"].value == Decimal("0.6")


class TestUnits:
    """Inputs are normalized to the declared unit."""

    def test_mm_normalized_to_m(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(length=Quantity.of(5000, "mm"))
        result = calculator.calculate(
            wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        assert result.amount == Decimal("13.5")
        assert result.steps[0].value == Decimal("5")
        assert result.steps[0].unit == "m"

    def test_pct_default_normalized_to_ratio(
        self, calculator: AssemblyCalculator, registry: FormulaRegistry
    ) -> None:
        """ceil(4 * 3 * 1.1 / 2.4) = ceil(5.5) = 6 boards with the 10 pct default."""
        formula = registry.get_or_raise("slab_board_count_v1")
        result = calculator.calculate(
            formula,
            {
                "length": Quantity.of(4, "m"),
                "width": Quantity.of(3, "m"),
                "board_area": Quantity.of("2.4", "m2"),
            },
            project_id=PROJECT_ID,
            element_id="slab-1",
        )
        assert result.amount == Decimal("6")
        assert result.inputs["waste"] == Quantity.of("0.1", "ratio")

    def test_incompatible_unit_is_validation_error(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(length=Quantity.of(5, "m2"))
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )
        [violation] = exc_info.value.violations
        assert violation["input"] == "length"
        assert violation["reason"] == "unit"
        assert violation["expected_unit"] == "m"

    def test_unknown_unit_is_validation_error(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(height=Quantity.of(5, "furlong"))
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )
        assert exc_info.value.violations[0]["input"] == "height"


class TestConstraints:
    """Declared bounds are checked on normalized values."""

    def test_negative_length_names_constraint(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(length=Quantity.of(-2.0, "m"))
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )
        [violation] = exc_info.value.violations
        assert violation["input"] == "length"
        assert violation["constraint"] == "length > 0"
        assert "length" in exc_info.value.message
        assert "length > 0" in exc_info.value.message

    def test_zero_length_violates_exclusive_bound(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(length=Quantity.of(0, "m"))
        with pytest.raises(ValidationError):
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )

    def test_all_violations_and_missing_reported_together(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = {"length": Quantity.of(-1, "m"), "height": Quantity.of(3, "kg")}
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )
        assert exc_info.value.missing == ["opening_area"]
        assert sorted(v["input"] for v in exc_info.value.violations) == ["height", "length"]

    def test_upper_bound(self, calculator: AssemblyCalculator, registry: FormulaRegistry) -> None:
        formula = registry.get_or_raise("slab_volume_v1")
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                formula,
                {
                    "length": Quantity.of(4, "m"),
                    "width": Quantity.of(3, "m"),
                    "thickness": Quantity.of(2500, "mm"),
                },
                project_id=PROJECT_ID,
                element_id="slab-1",
            )
        assert exc_info.value.violations[0]["constraint"] == "thickness >= 0 and thickness <= 2"
        # 2500 mm exceeds the bound after normalization to m
        assert exc_info.value.violations[0]["value"] == "2.5"


class TestMagnitude:
    """Exponents outside the decimal range are validation failures, not work."""

    def test_huge_exponent_collected_with_other_violations(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(
            length=Quantity.of("1E+3000000", "mm"), height=Quantity.of(-1, "m")
        )
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )
        violations = {v["input"]: v for v in exc_info.value.violations}
        assert violations["length"]["reason"] == "magnitude"
        assert violations["length"]["value"] == "1E+3000000"
        assert violations["height"]["reason"] == "out_of_range"
        assert "magnitude" in exc_info.value.message

    def test_huge_exponent_in_expected_unit(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(opening_area=Quantity.of("1E-3000000", "m2"))
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )
        [violation] = exc_info.value.violations
        assert violation["input"] == "opening_area"
        assert violation["reason"] == "magnitude"

    def test_scaling_past_the_range_is_a_violation(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(length=Quantity.of("9E+999999", "km"))
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )
        assert exc_info.value.violations[0]["reason"] == "magnitude"


class TestSignedZero:
    """A zero result never carries a sign."""

    def test_negative_zero_amount_recorded_as_zero(self, calculator: AssemblyCalculator) -> None:
        formula = FormulaDefinition(
            formula_id="offset_total",
            expression="offset * count",
            output_unit="m",
            inputs=(
                InputRequirement(name="offset", unit="m"),
                InputRequirement(name="count", unit="each"),
            ),
        )
        result = calculator.calculate(
            formula,
            {"offset": Quantity.of("-2", "m"), "count": Quantity.of(0, "each")},
            project_id=PROJECT_ID,
            element_id=ELEMENT_ID,
        )
        assert str(result.amount) == "0.0000"
        assert result.to_event_payload()["amount"] == "0.0000"


class TestEvaluationFailures:
    """Grammar and arithmetic failures carry the formula id."""

    def test_negative_result_is_calculation_error(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        inputs = _wall_inputs(opening_area=Quantity.of(100, "m2"))
        with pytest.raises(CalculationError) as exc_info:
            calculator.calculate(
                wall_area_formula, inputs, project_id=PROJECT_ID, element_id=ELEMENT_ID
            )
        assert exc_info.value.formula_id == "test_wall_area"
        assert exc_info.value.context["step_index"] == 3
        assert exc_info.value.context["variables"]["opening_area"] == "100"

    def test_disallowed_expression_is_security_error(
        self, calculator: AssemblyCalculator
    ) -> None:
        formula = FormulaDefinition(
            formula_id="bad", expression="exec(1)", output_unit="each"
        )
        with pytest.raises(UnknownIdentifierError) as exc_info:
            calculator.calculate(formula, {}, project_id=PROJECT_ID, element_id=ELEMENT_ID)
        assert exc_info.value.formula_id == "bad"

    def test_undeclared_variable_is_security_error(
        self, calculator: AssemblyCalculator
    ) -> None:
        formula = FormulaDefinition(
            formula_id="undeclared",
            expression="length * width",
            output_unit="m2",
            inputs=(InputRequirement(name="length", unit="m"),),
        )
        with pytest.raises(SecurityError):
            calculator.calculate(
                formula,
                {"length": Quantity.of(2, "m"), "width": Quantity.of(2, "m")},
                project_id=PROJECT_ID,
                element_id=ELEMENT_ID,
            )


class TestDeterminism:
    """Same inputs, same amount, same steps, same hash."""

    def test_bit_identical_results(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        first = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        second = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        assert first.amount == second.amount
        assert str(first.amount) == str(second.amount)
        assert first.steps == second.steps
        assert first.reproducibility_hash == second.reproducibility_hash
        assert first.result_id != second.result_id

    def test_equivalent_units_same_hash(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        """5 m and 5000 mm normalize to the same value but not the same Decimal text."""
        in_m = calculator.calculate(
            wall_area_formula,
            _wall_inputs(length=Quantity.of("5", "m")),
            project_id=PROJECT_ID,
            element_id=ELEMENT_ID,
        )
        in_mm = calculator.calculate(
            wall_area_formula,
            _wall_inputs(length=Quantity.of("5000", "mm")),
            project_id=PROJECT_ID,
            element_id=ELEMENT_ID,
        )
        assert in_m.amount == in_mm.amount

    def test_changed_input_changes_hash(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        first = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        second = calculator.calculate(
            wall_area_formula,
            _wall_inputs(height=Quantity.of(3.1, "m")),
            project_id=PROJECT_ID,
            element_id=ELEMENT_ID,
        )
        assert first.reproducibility_hash != second.reproducibility_hash


class TestReproducibility:
    """verify_reproducibility re-runs a stored result."""

    def test_verify_passes_for_untouched_result(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        result = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        calculator.verify_reproducibility(result, wall_area_formula)

    def test_tampered_amount_detected(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        result = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        tampered = result.model_copy(update={"reproducibility_hash": "0" * 64})
        with pytest.raises(ReproducibilityError):
            calculator.verify_reproducibility(tampered, wall_area_formula)

    def test_changed_formula_detected(
        self, calculator: AssemblyCalculator, wall_area_formula: FormulaDefinition
    ) -> None:
        result = calculator.calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        changed = wall_area_formula.model_copy(update={"output_precision": 2})
        with pytest.raises(ReproducibilityError):
            calculator.verify_reproducibility(result, changed)

    def test_code_version_is_part_of_hash(self, wall_area_formula: FormulaDefinition) -> None:
        a = AssemblyCalculator(code_version="1").calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        b = AssemblyCalculator(code_version="2").calculate(
            wall_area_formula, _wall_inputs(), project_id=PROJECT_ID, element_id=ELEMENT_ID
        )
        assert a.reproducibility_hash != b.reproducibility_hash
