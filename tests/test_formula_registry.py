"""Tests for the formula registry and YAML loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from takeoff.calc.formulas.loader import (
    CORE_FORMULAS_PATH,
    TAKEOFF_FORMULAS_PATH_ENV,
    get_formulas_path,
    load_formula_definitions,
    parse_formula_definitions,
)
from takeoff.calc.formulas.registry import FormulaRegistry
from takeoff.errors import FormulaConfigError, LexError, UnknownIdentifierError
from takeoff.models.formula_definition import FormulaDefinition, InputRequirement


def _area_formula(expression: str = "length * width") -> FormulaDefinition:
    return FormulaDefinition(
        formula_id="area",
        expression=expression,
        output_unit="m2",
        classifications=("slab",),
        inputs=(
            InputRequirement(name="length", unit="m"),
            InputRequirement(name="width", unit="m"),
        ),
    )


class TestRegistry:
    """Registration, lookup and immutability."""

    def test_singleton(self) -> None:
        assert FormulaRegistry() is FormulaRegistry()

    def test_reset_instance(self) -> None:
        first = FormulaRegistry()
        FormulaRegistry.reset_instance()
        assert FormulaRegistry() is not first

    def test_core_formulas_registered(self, registry: FormulaRegistry) -> None:
        assert registry.list_registered() == [
            "column_round_volume_v1",
            "slab_board_count_v1",
            "slab_volume_v1",
            "stair_stringer_length_v1",
            "wall_net_area_v1",
            "wall_stud_count_v1",
        ]

    def test_same_definition_twice_is_noop(self, registry: FormulaRegistry) -> None:
        registry.register(_area_formula())
        registry.register(_area_formula())
        assert registry.get("area") == _area_formula()

    def test_changed_definition_rejected(self, registry: FormulaRegistry) -> None:
        registry.register(_area_formula())
        with pytest.raises(FormulaConfigError) as exc_info:
            registry.register(_area_formula("length * width * 2"))
        assert exc_info.value.formula_id == "area"
        assert registry.get_or_raise("area").expression == "length * width"

    def test_undeclared_variable_rejected(self, registry: FormulaRegistry) -> None:
        with pytest.raises(UnknownIdentifierError) as exc_info:
            registry.register(_area_formula("length * width * depth"))
        assert exc_info.value.identifiers == ["depth"]
        assert exc_info.value.formula_id == "area"
        assert registry.get("area") is None

    def test_disallowed_expression_rejected(self, registry: FormulaRegistry) -> None:
        with pytest.raises(LexError):
            registry.register(_area_formula("length; import os"))

    def test_get_or_raise_unknown(self, registry: FormulaRegistry) -> None:
        with pytest.raises(KeyError):
            registry.get_or_raise("nope")

    def test_for_classification(self, registry: FormulaRegistry) -> None:
        ids = [f.formula_id for f in registry.for_classification("wall")]
        assert ids == ["wall_net_area_v1", "wall_stud_count_v1"]
        assert registry.for_classification("roof") == []


class TestFormulaDefinition:
    """Model-level validation of definitions."""

    def test_reserved_input_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            InputRequirement(name="pi", unit="m")

    def test_unknown_unit_rejected(self) -> None:
        with pytest.raises(ValueError):
            InputRequirement(name="length", unit="furlong")

    def test_unit_alias_canonicalized(self) -> None:
        assert InputRequirement(name="area", unit="sqm").unit == "m2"

    def test_duplicate_inputs_rejected(self) -> None:
        with pytest.raises(ValueError):
            FormulaDefinition(
                formula_id="dup",
                expression="a + a",
                output_unit="m",
                inputs=(InputRequirement(name="a", unit="m"), InputRequirement(name="a", unit="m")),
            )

    def test_formula_hash_ignores_description(self) -> None:
        plain = _area_formula()
        described = plain.model_copy(update={"description": "Floor area"})
        assert plain.formula_hash == described.formula_hash

    def test_formula_hash_tracks_expression(self) -> None:
        assert _area_formula().formula_hash != _area_formula("width * length").formula_hash


class TestLoader:
    """YAML formula files."""

    def test_core_file_loads(self) -> None:
        formulas = load_formula_definitions(CORE_FORMULAS_PATH)
        assert len(formulas) == 6

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "formulas.yaml"
        path.write_text(
            "formulas:\n"
            "  - formula_id: perimeter_v1\n"
            "    expression: \"2 * (length + width)\"\n"
            "    output_unit: m\n"
            "    inputs:\n"
            "      - {name: length, unit: m}\n"
            "      - {name: width, unit: ft}\n",
            encoding="utf-8",
        )
        [formula] = load_formula_definitions(path)
        assert formula.formula_id == "perimeter_v1"
        assert formula.requirement("width").unit == "ft"

    def test_env_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "custom.yaml"
        monkeypatch.setenv(TAKEOFF_FORMULAS_PATH_ENV, str(path))
        assert get_formulas_path() == path

    def test_default_path_is_core(self) -> None:
        assert get_formulas_path() == CORE_FORMULAS_PATH

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FormulaConfigError):
            load_formula_definitions(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("formulas: [\n", encoding="utf-8")
        with pytest.raises(FormulaConfigError):
            load_formula_definitions(path)

    def test_wrong_shape(self) -> None:
        with pytest.raises(FormulaConfigError):
            parse_formula_definitions(["not", "a", "mapping"])

    def test_invalid_definition_reports_index(self) -> None:
        document = {
            "formulas": [
                {"formula_id": "ok", "expression": "1", "output_unit": "each"},
                {"formula_id": "bad", "expression": "1", "output_unit": "parsec"},
            ]
        }
        with pytest.raises(FormulaConfigError) as exc_info:
            parse_formula_definitions(document)
        assert exc_info.value.formula_id == "bad"
        assert exc_info.value.context["index"] == 1

    def test_duplicate_ids(self) -> None:
        entry = {"formula_id": "twice", "expression": "1", "output_unit": "each"}
        with pytest.raises(FormulaConfigError) as exc_info:
            parse_formula_definitions({"formulas": [entry, dict(entry)]})
        assert exc_info.value.formula_id == "twice"
