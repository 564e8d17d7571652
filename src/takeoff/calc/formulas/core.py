"""Core formulas shipped with the engine (see core.yaml)."""

from __future__ import annotations

from takeoff.calc.formulas.loader import CORE_FORMULAS_PATH, load_formula_definitions
from takeoff.calc.formulas.registry import FormulaRegistry


def register_core_formulas(registry: FormulaRegistry | None = None) -> FormulaRegistry:
    """Register all core formulas with the registry.

    Args:
        registry: Optional registry to use. If None, uses the singleton.

    Returns:
        The registry with core formulas registered.
    """
    if registry is None:
        registry = FormulaRegistry()

    for formula in load_formula_definitions(CORE_FORMULAS_PATH):
        if registry.get(formula.formula_id) is None:
            registry.register(formula)

    return registry
