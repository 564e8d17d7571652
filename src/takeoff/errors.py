"""Typed error taxonomy for the quantity calculation engine.

Every error carries a machine-readable code and enough structured context
(formula id, input snapshot, step index) to reproduce the failure without
re-running anything. Only ConcurrentAppendError is ever retried.

Hierarchy:
    EngineError
    ├── SecurityError            malformed or disallowed formula text
    │   ├── LexError
    │   ├── ParseError
    │   └── UnknownIdentifierError
    ├── ValidationError          caller-supplied inputs insufficient
    ├── UnitError
    │   ├── UnknownUnitError
    │   ├── IncompatibleUnitsError
    │   └── ConversionRangeError
    ├── CalculationError         non-finite or negative result
    ├── ReproducibilityError
    ├── FormulaConfigError
    ├── ConcurrentAppendError
    ├── IntegrityViolation
    └── StoreError
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors.

    Attributes:
        code: Machine-readable error code (e.g., "VALIDATION_FAILED").
        message: Human-readable message.
        formula_id: Formula the failure relates to, if any.
        context: Structured diagnostic context (JSON-serializable).
    """

    code = "ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        formula_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.formula_id = formula_id
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a deterministic, JSON-native dict."""
        return {
            "code": self.code,
            "context": self.context,
            "formula_id": self.formula_id,
            "message": self.message,
        }


class SecurityError(EngineError):
    """Formula text is malformed or uses something outside the allow-list.

    Always a configuration defect: surfaced to maintainers, never defaulted.
    """

    code = "SECURITY_REJECTED"


class LexError(SecurityError):
    """Formula contains a character outside the permitted lexical set."""

    code = "LEX_ERROR"

    def __init__(self, expression: str, position: int, char: str) -> None:
        self.expression = expression
        self.position = position
        self.char = char
        super().__init__(
            f"Unexpected character {char!r} at position {position}",
            context={"expression": expression, "position": position, "char": char},
        )


class ParseError(SecurityError):
    """Token stream does not form a valid expression."""

    code = "PARSE_ERROR"

    def __init__(self, message: str, expression: str, position: int | None = None) -> None:
        self.expression = expression
        self.position = position
        super().__init__(
            message,
            context={"expression": expression, "position": position},
        )


class UnknownIdentifierError(SecurityError):
    """Identifier resolves to neither a variable, a constant, nor a function."""

    code = "UNKNOWN_IDENTIFIER"

    def __init__(self, identifiers: list[str], expression: str) -> None:
        self.identifiers = identifiers
        self.expression = expression
        super().__init__(
            f"Unknown identifier(s): {identifiers}",
            context={"expression": expression, "identifiers": identifiers},
        )


class ValidationError(EngineError):
    """Inputs are missing, in the wrong unit, or out of range.

    Recoverable: the calling workflow can request the missing data.

    Attributes:
        missing: Every missing required input name.
        violations: One entry per rejected input ({"input", "reason", ...}).
    """

    code = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        formula_id: str | None = None,
        missing: list[str] | None = None,
        violations: list[dict[str, Any]] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.missing = missing or []
        self.violations = violations or []
        ctx = dict(context or {})
        ctx["missing"] = self.missing
        ctx["violations"] = self.violations
        super().__init__(message, formula_id=formula_id, context=ctx)


class UnitError(EngineError):
    """Base class for unit conversion failures."""

    code = "UNIT_ERROR"


class UnknownUnitError(UnitError):
    """Unit tag is not part of the supported closed set."""

    code = "UNKNOWN_UNIT"

    def __init__(self, unit: str) -> None:
        self.unit = unit
        super().__init__(f"Unknown unit: {unit!r}", context={"unit": unit})


class IncompatibleUnitsError(UnitError):
    """Units belong to different physical quantity classes."""

    code = "INCOMPATIBLE_UNITS"

    def __init__(self, from_unit: str, to_unit: str, from_class: str, to_class: str) -> None:
        self.from_unit = from_unit
        self.to_unit = to_unit
        super().__init__(
            f"Cannot convert {from_unit} ({from_class}) to {to_unit} ({to_class})",
            context={
                "from_class": from_class,
                "from_unit": from_unit,
                "to_class": to_class,
                "to_unit": to_unit,
            },
        )


class ConversionRangeError(UnitError):
    """Amount is too large or too small to convert within the decimal context."""

    code = "CONVERSION_OUT_OF_RANGE"

    def __init__(self, amount: str, from_unit: str, to_unit: str) -> None:
        self.amount = amount
        self.from_unit = from_unit
        self.to_unit = to_unit
        super().__init__(
            f"Cannot convert {amount} {from_unit} to {to_unit}: magnitude out of range",
            context={"amount": amount, "from_unit": from_unit, "to_unit": to_unit},
        )


class CalculationError(EngineError):
    """Evaluation produced a non-finite, negative or undefined result.

    Treated as a data-quality defect; carries the full input snapshot.
    """

    code = "CALCULATION_FAILED"


class ReproducibilityError(EngineError):
    """Re-running a stored calculation did not reproduce its hash."""

    code = "REPRODUCIBILITY_FAILED"

    def __init__(self, result_id: str, expected_hash: str, computed_hash: str) -> None:
        self.result_id = result_id
        self.expected_hash = expected_hash
        self.computed_hash = computed_hash
        super().__init__(
            f"Reproducibility check failed for result_id={result_id}. "
            f"Expected hash: {expected_hash[:16]}..., "
            f"Computed hash: {computed_hash[:16]}...",
            context={
                "computed_hash": computed_hash,
                "expected_hash": expected_hash,
                "result_id": result_id,
            },
        )


class FormulaConfigError(EngineError):
    """Formula definitions could not be loaded or registered."""

    code = "FORMULA_CONFIG_ERROR"


class ConcurrentAppendError(EngineError):
    """Another append for the same project won the race for a sequence number."""

    code = "CONCURRENT_APPEND"

    def __init__(
        self, project_id: str, expected_sequence: int, actual_sequence: int | None
    ) -> None:
        self.project_id = project_id
        self.expected_sequence = expected_sequence
        self.actual_sequence = actual_sequence
        super().__init__(
            f"Ledger for project {project_id} moved past sequence {expected_sequence} "
            f"(current: {actual_sequence})",
            context={
                "actual_sequence": actual_sequence,
                "expected_sequence": expected_sequence,
                "project_id": project_id,
            },
        )


class IntegrityViolation(EngineError):
    """Ledger verification found broken or missing chain links.

    Never auto-repaired; reported for manual investigation.
    """

    code = "INTEGRITY_VIOLATION"


class StoreError(EngineError):
    """Persistence backend failed. Fail closed: nothing partial is written."""

    code = "STORE_ERROR"
