"""Formula registry, YAML loading, and the core formula set."""

from takeoff.calc.formulas.core import register_core_formulas
from takeoff.calc.formulas.loader import load_formula_definitions, parse_formula_definitions
from takeoff.calc.formulas.registry import FormulaRegistry, check_formula

__all__ = [
    "FormulaRegistry",
    "check_formula",
    "load_formula_definitions",
    "parse_formula_definitions",
    "register_core_formulas",
]
