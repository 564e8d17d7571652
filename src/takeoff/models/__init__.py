"""Pydantic models for formulas, results and the calculation ledger."""

from takeoff.models.calculation_result import CalculationResult, CalculationStep, ResultStatus
from takeoff.models.formula_definition import FormulaDefinition, InputRequirement
from takeoff.models.ledger_entry import (
    GENESIS_DIGEST,
    DiscrepancyKind,
    IntegrityDiscrepancy,
    IntegrityReport,
    LedgerEntry,
    LedgerEvent,
    LedgerEventKind,
)
from takeoff.models.quantity import InputSet, Quantity

__all__ = [
    "GENESIS_DIGEST",
    "CalculationResult",
    "CalculationStep",
    "DiscrepancyKind",
    "FormulaDefinition",
    "InputRequirement",
    "InputSet",
    "IntegrityDiscrepancy",
    "IntegrityReport",
    "LedgerEntry",
    "LedgerEvent",
    "LedgerEventKind",
    "Quantity",
    "ResultStatus",
]
