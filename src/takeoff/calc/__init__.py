"""Takeoff deterministic calculation layer.

This package provides:
- units: exact conversion between compatible measurement units
- expression: the restricted arithmetic language formulas are written in
- engine: AssemblyCalculator, which validates inputs and produces results
- formulas: FormulaRegistry and YAML loading of formula definitions

Only the pure leaf modules are re-exported here; import the calculator from
takeoff.calc.engine.
"""

from takeoff.calc.expression import CompiledExpression, compile_expression, evaluate
from takeoff.calc.units import conversion_factor, convert, normalize_unit, unit_class

__all__ = [
    "CompiledExpression",
    "compile_expression",
    "conversion_factor",
    "convert",
    "evaluate",
    "normalize_unit",
    "unit_class",
]
