"""Pytest configuration and fixtures for takeoff tests.

This module provides common fixtures and configuration for all tests.
"""

from __future__ import annotations

from collections.abc import Iterator
from decimal import Decimal

import pytest

from takeoff.calc.engine import AssemblyCalculator
from takeoff.calc.formulas.core import register_core_formulas
from takeoff.calc.formulas.loader import TAKEOFF_FORMULAS_PATH_ENV
from takeoff.calc.formulas.registry import FormulaRegistry
from takeoff.ledger.ledger import CalculationLedger
from takeoff.models.formula_definition import FormulaDefinition, InputRequirement
from takeoff.orchestrator import TAKEOFF_LEDGER_MAX_RETRIES_ENV, QuantityOrchestrator
from takeoff.persistence.db import TAKEOFF_DATABASE_URL_ENV, reset_engine
from takeoff.persistence.store import InMemoryCalculationStore

PROJECT_ID = "proj-0001"
ELEMENT_ID = "wall-north"


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Fresh formula registry and no storage/config environment for every test."""
    for name in (
        TAKEOFF_DATABASE_URL_ENV,
        TAKEOFF_FORMULAS_PATH_ENV,
        TAKEOFF_LEDGER_MAX_RETRIES_ENV,
    ):
        monkeypatch.delenv(name, raising=False)
    FormulaRegistry.reset_instance()
    yield
    FormulaRegistry.reset_instance()
    reset_engine()


@pytest.fixture
def registry() -> FormulaRegistry:
    """Create a fresh formula registry with core formulas."""
    reg = FormulaRegistry()
    register_core_formulas(reg)
    return reg


@pytest.fixture
def calculator() -> AssemblyCalculator:
    return AssemblyCalculator(code_version="test-1.0.0")


@pytest.fixture
def store() -> InMemoryCalculationStore:
    return InMemoryCalculationStore()


@pytest.fixture
def ledger(store: InMemoryCalculationStore) -> CalculationLedger:
    return CalculationLedger(store)


@pytest.fixture
def orchestrator(
    calculator: AssemblyCalculator, ledger: CalculationLedger, registry: FormulaRegistry
) -> QuantityOrchestrator:
    return QuantityOrchestrator(calculator, ledger, registry=registry, max_append_retries=3)


@pytest.fixture
def wall_area_formula() -> FormulaDefinition:
    """Net wall area: length * height - opening_area, with length > 0."""
    return FormulaDefinition(
        formula_id="test_wall_area",
        expression="length * height - opening_area",
        output_unit="m2",
        classifications=("wall",),
        inputs=(
            InputRequirement(name="length", unit="m", min_value=Decimal("0"), min_exclusive=True),
            InputRequirement(name="height", unit="m", min_value=Decimal("0"), min_exclusive=True),
            InputRequirement(name="opening_area", unit="m2", min_value=Decimal("0")),
        ),
    )
