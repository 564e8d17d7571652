"""Formula registry of versioned definitions.

Definitions are immutable once registered. Every expression is compiled
through the restricted grammar at registration time, and every variable it
references must be a declared input, so a defective formula is rejected
before any element is ever calculated with it.
"""

from __future__ import annotations

import logging

from takeoff.calc.expression import compile_expression
from takeoff.errors import FormulaConfigError, SecurityError, UnknownIdentifierError
from takeoff.models.formula_definition import FormulaDefinition

logger = logging.getLogger(__name__)


class FormulaRegistry:
    """Registry of formula definitions keyed by formula_id.

    Singleton by default so configuration loaded at startup is visible to
    every orchestrator. Formulas are immutable once registered.
    """

    _instance: FormulaRegistry | None = None
    _formulas: dict[str, FormulaDefinition]

    def __new__(cls) -> FormulaRegistry:
        """Singleton pattern for global registry."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._formulas = {}
        return cls._instance

    def register(self, formula: FormulaDefinition) -> None:
        """Register a formula definition.

        Args:
            formula: The FormulaDefinition to register.

        Raises:
            FormulaConfigError: If the formula_id is already registered with a
                different definition.
            SecurityError: If the expression fails the grammar, or uses a
                variable that is not a declared input.
        """
        existing = self._formulas.get(formula.formula_id)
        if existing is not None:
            if existing.formula_hash == formula.formula_hash:
                return
            raise FormulaConfigError(
                f"Formula {formula.formula_id} already registered. "
                "Create a new formula_id instead of overwriting.",
                formula_id=formula.formula_id,
                context={
                    "existing_hash": existing.formula_hash,
                    "new_hash": formula.formula_hash,
                },
            )

        check_formula(formula)
        self._formulas[formula.formula_id] = formula
        logger.debug("Registered formula %s v%s", formula.formula_id, formula.version)

    def register_all(self, formulas: list[FormulaDefinition]) -> None:
        for formula in formulas:
            self.register(formula)

    def get(self, formula_id: str) -> FormulaDefinition | None:
        """Get a formula definition by id, or None if not registered."""
        return self._formulas.get(formula_id)

    def get_or_raise(self, formula_id: str) -> FormulaDefinition:
        """Get a formula definition or raise if not found.

        Raises:
            KeyError: If no formula is registered under this id.
        """
        formula = self.get(formula_id)
        if formula is None:
            raise KeyError(f"No formula registered with id: {formula_id}")
        return formula

    def for_classification(self, classification: str) -> list[FormulaDefinition]:
        """Formulas applicable to an element classification, sorted by id."""
        return sorted(
            (f for f in self._formulas.values() if classification in f.classifications),
            key=lambda f: f.formula_id,
        )

    def list_registered(self) -> list[str]:
        """List all registered formula ids, sorted."""
        return sorted(self._formulas)

    def clear(self) -> None:
        """Clear all registered formulas. For testing only."""
        self._formulas.clear()

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. For testing only."""
        cls._instance = None


def check_formula(formula: FormulaDefinition) -> None:
    """Compile a formula and check its variables against declared inputs.

    Raises:
        SecurityError: LexError, ParseError or UnknownIdentifierError.
    """
    try:
        compiled = compile_expression(formula.expression)
    except SecurityError as e:
        e.formula_id = formula.formula_id
        logger.warning(
            "Rejected formula %s: %s (%s)", formula.formula_id, e.message, e.code
        )
        raise

    undeclared = [name for name in compiled.variables if name not in formula.input_names]
    if undeclared:
        error = UnknownIdentifierError(undeclared, formula.expression)
        error.formula_id = formula.formula_id
        logger.warning(
            "Rejected formula %s: undeclared variables %s", formula.formula_id, undeclared
        )
        raise error
