"""Quantity Orchestrator: runs formulas for an element and records every attempt.

For each applicable formula the orchestrator runs the AssemblyCalculator
and appends exactly one outcome to the project's ledger before moving on:

    success           CREATED, or SUPERSEDED + RECOMPUTED when the element
                      already had a live result for that formula
    ValidationError   VALIDATION_FAILED
    SecurityError     SECURITY_REJECTED
    CalculationError  CALCULATION_FAILED

A result and the entries describing it are committed together. One formula
failing never stops the others; the caller gets one FormulaOutcome per
formula. ConcurrentAppendError is the only error retried.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from takeoff.calc.engine import AssemblyCalculator
from takeoff.calc.formulas.registry import FormulaRegistry
from takeoff.errors import (
    CalculationError,
    ConcurrentAppendError,
    EngineError,
    FormulaConfigError,
    SecurityError,
    ValidationError,
)
from takeoff.ledger.ledger import CalculationLedger
from takeoff.models.calculation_result import CalculationResult
from takeoff.models.formula_definition import FormulaDefinition
from takeoff.models.ledger_entry import (
    IntegrityReport,
    LedgerEntry,
    LedgerEvent,
    LedgerEventKind,
)
from takeoff.models.quantity import Quantity

logger = logging.getLogger(__name__)

TAKEOFF_LEDGER_MAX_RETRIES_ENV = "TAKEOFF_LEDGER_MAX_RETRIES"
DEFAULT_MAX_APPEND_RETRIES = 3

_FAILURE_KINDS: tuple[tuple[type[EngineError], LedgerEventKind], ...] = (
    (ValidationError, LedgerEventKind.VALIDATION_FAILED),
    (SecurityError, LedgerEventKind.SECURITY_REJECTED),
    (CalculationError, LedgerEventKind.CALCULATION_FAILED),
)


def get_max_append_retries() -> int:
    """Retry bound from TAKEOFF_LEDGER_MAX_RETRIES, default 3.

    Raises:
        FormulaConfigError: If the variable is set but not a positive integer.
    """
    raw = os.environ.get(TAKEOFF_LEDGER_MAX_RETRIES_ENV)
    if not raw:
        return DEFAULT_MAX_APPEND_RETRIES
    try:
        value = int(raw)
    except ValueError as e:
        raise FormulaConfigError(
            f"{TAKEOFF_LEDGER_MAX_RETRIES_ENV} must be an integer, got {raw!r}"
        ) from e
    if value < 1:
        raise FormulaConfigError(f"{TAKEOFF_LEDGER_MAX_RETRIES_ENV} must be >= 1, got {value}")
    return value


@dataclass(frozen=True)
class FormulaOutcome:
    """Outcome of one formula for one element: a result or an error, never both."""

    formula_id: str
    result: CalculationResult | None = None
    error: EngineError | None = None
    entries: tuple[LedgerEntry, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.model_dump(mode="json") for e in self.entries],
            "error": self.error.to_dict() if self.error is not None else None,
            "formula_id": self.formula_id,
            "result": self.result.model_dump(mode="json") if self.result is not None else None,
        }


class QuantityOrchestrator:
    """Coordinates calculator, formula registry and ledger for elements."""

    def __init__(
        self,
        calculator: AssemblyCalculator,
        ledger: CalculationLedger,
        registry: FormulaRegistry | None = None,
        max_append_retries: int | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            calculator: Evaluates formulas.
            ledger: Ledger every attempt is recorded in.
            registry: Formula source for ids and classifications. Defaults to
                the singleton registry.
            max_append_retries: Attempts per append before a
                ConcurrentAppendError is surfaced. Defaults to
                TAKEOFF_LEDGER_MAX_RETRIES or 3.
        """
        self._calculator = calculator
        self._ledger = ledger
        self._registry = registry if registry is not None else FormulaRegistry()
        self._max_append_retries = (
            max_append_retries if max_append_retries is not None else get_max_append_retries()
        )
        if self._max_append_retries < 1:
            raise ValueError("max_append_retries must be >= 1")

    @property
    def ledger(self) -> CalculationLedger:
        return self._ledger

    @property
    def registry(self) -> FormulaRegistry:
        return self._registry

    def calculate_for_element(
        self,
        project_id: str,
        element_id: str,
        inputs: Mapping[str, Quantity],
        formulas: Sequence[FormulaDefinition | str],
    ) -> list[FormulaOutcome]:
        """Run each formula for the element and record every attempt.

        Args:
            project_id: Project whose ledger receives the entries.
            element_id: Element being quantified.
            inputs: Resolved parameters for the element.
            formulas: Definitions, or ids looked up in the registry.

        Returns:
            One FormulaOutcome per formula, in the order given.

        Raises:
            FormulaConfigError: If a formula id is not registered. Raised
                before anything is calculated or recorded.
            StoreError: If the store fails; entries committed for earlier
                formulas stay committed.
        """
        definitions = [self._resolve(f) for f in formulas]
        return [
            self._run_formula(project_id, element_id, inputs, formula) for formula in definitions
        ]

    def calculate_for_classification(
        self,
        project_id: str,
        element_id: str,
        classification: str,
        inputs: Mapping[str, Quantity],
    ) -> list[FormulaOutcome]:
        """Run every registered formula applicable to the classification."""
        formulas = self._registry.for_classification(classification)
        if not formulas:
            logger.info("No formulas registered for classification %s", classification)
        return self.calculate_for_element(project_id, element_id, inputs, formulas)

    def get_ledger(self, project_id: str) -> list[LedgerEntry]:
        return self._ledger.entries_for(project_id)

    def verify_ledger(self, project_id: str) -> IntegrityReport:
        return self._ledger.verify_chain(project_id)

    def live_result(
        self, project_id: str, element_id: str, formula_id: str
    ) -> CalculationResult | None:
        return self._ledger.store.live_result(project_id, element_id, formula_id)

    def _resolve(self, formula: FormulaDefinition | str) -> FormulaDefinition:
        if isinstance(formula, FormulaDefinition):
            return formula
        definition = self._registry.get(formula)
        if definition is None:
            raise FormulaConfigError(
                f"No formula registered with id: {formula}", formula_id=formula
            )
        return definition

    def _run_formula(
        self,
        project_id: str,
        element_id: str,
        inputs: Mapping[str, Quantity],
        formula: FormulaDefinition,
    ) -> FormulaOutcome:
        try:
            result = self._calculator.calculate(
                formula, inputs, project_id=project_id, element_id=element_id
            )
        except (ValidationError, SecurityError, CalculationError) as e:
            return self._record_failure(project_id, element_id, formula, e)

        try:
            entries = self._with_retries(
                project_id, lambda head: self._append_success(project_id, result, head)
            )
        except ConcurrentAppendError as e:
            return FormulaOutcome(formula_id=formula.formula_id, error=e)

        logger.info(
            "Recorded %s for element %s in project %s (%s %s)",
            formula.formula_id,
            element_id,
            project_id,
            result.amount,
            result.unit,
        )
        return FormulaOutcome(
            formula_id=formula.formula_id, result=result, entries=tuple(entries)
        )

    def _record_failure(
        self,
        project_id: str,
        element_id: str,
        formula: FormulaDefinition,
        error: EngineError,
    ) -> FormulaOutcome:
        kind = next(k for cls, k in _FAILURE_KINDS if isinstance(error, cls))
        if isinstance(error, ValidationError):
            logger.info(
                "Formula %s rejected inputs for element %s: %s",
                formula.formula_id,
                element_id,
                error.message,
            )
        else:
            logger.warning(
                "Formula %s failed for element %s (%s): %s",
                formula.formula_id,
                element_id,
                error.code,
                error.message,
            )

        event = LedgerEvent(
            kind=kind,
            payload={
                "element_id": element_id,
                "error": error.to_dict(),
                "formula_hash": formula.formula_hash,
                "formula_id": formula.formula_id,
            },
        )
        try:
            entries = self._with_retries(
                project_id,
                lambda head: self._ledger.append_many(
                    project_id, [event], expected_last_sequence=head
                ),
            )
        except ConcurrentAppendError as e:
            logger.warning(
                "Could not record %s for %s: %s", kind.value, formula.formula_id, e.message
            )
            return FormulaOutcome(formula_id=formula.formula_id, error=error)

        return FormulaOutcome(formula_id=formula.formula_id, error=error, entries=tuple(entries))

    def _append_success(
        self, project_id: str, result: CalculationResult, head: int
    ) -> list[LedgerEntry]:
        prior = self._ledger.store.live_result(project_id, result.element_id, result.formula_id)
        payload = result.to_event_payload()

        if prior is None:
            events = [
                LedgerEvent(
                    kind=LedgerEventKind.CREATED,
                    payload=payload,
                    calculation_id=result.result_id,
                )
            ]
        else:
            prior_entry = self._entry_recording(project_id, prior.result_id)
            prior_entry_id = prior_entry.entry_id if prior_entry is not None else None
            events = [
                LedgerEvent(
                    kind=LedgerEventKind.SUPERSEDED,
                    payload={
                        "element_id": prior.element_id,
                        "formula_id": prior.formula_id,
                        "result_id": prior.result_id,
                        "superseded_by": result.result_id,
                    },
                    calculation_id=prior.result_id,
                    references_entry_id=prior_entry_id,
                ),
                LedgerEvent(
                    kind=LedgerEventKind.RECOMPUTED,
                    payload={**payload, "supersedes": prior.result_id},
                    calculation_id=result.result_id,
                    references_entry_id=prior_entry_id,
                ),
            ]

        return self._ledger.append_many(
            project_id, events, results=[result], expected_last_sequence=head
        )

    def _entry_recording(self, project_id: str, result_id: str) -> LedgerEntry | None:
        """The CREATED/RECOMPUTED entry that recorded a result."""
        for entry in reversed(self._ledger.entries_for(project_id, calculation_id=result_id)):
            if entry.event_kind in (LedgerEventKind.CREATED, LedgerEventKind.RECOMPUTED):
                return entry
        return None

    def _with_retries(
        self, project_id: str, append: Callable[[int], list[LedgerEntry]]
    ) -> list[LedgerEntry]:
        """Call append(head) with a fresh head until it stops conflicting.

        Raises:
            ConcurrentAppendError: After max_append_retries conflicting attempts.
        """
        attempt = 0
        while True:
            attempt += 1
            head = self._ledger.head_sequence(project_id)
            try:
                return append(head)
            except ConcurrentAppendError as e:
                if attempt >= self._max_append_retries:
                    logger.error(
                        "Giving up appending to project %s after %d attempts",
                        project_id,
                        attempt,
                    )
                    raise
                logger.warning(
                    "Concurrent append on project %s (attempt %d/%d): %s",
                    project_id,
                    attempt,
                    self._max_append_retries,
                    e.message,
                )
