"""Takeoff CLI - deterministic command-line interface to the quantity engine.

Usage:
    takeoff formulas check [--formulas PATH]
    takeoff calculate --project ID --element ID (--formula ID ... | --classification NAME)
                      [--input PATH] [--rate ID=AMOUNT:UNIT ...]
    takeoff ledger show --project ID [--event-kind KIND] [--calculation-id ID]
    takeoff ledger verify --project ID

Global options: --formulas PATH, --database-url URL, --log-level LEVEL.
Storage defaults to TAKEOFF_DATABASE_URL; without it the ledger lives only
for the duration of the command.

Input JSON for calculate maps input names to quantities:
    {"length": {"value": "5.0", "unit": "m"}, "height": {"value": "3", "unit": "m"}}

A rate prices one formula's result, e.g. --rate wall_net_area_v1=42.50:per_m2.

Exit codes:
    0: Success (all formulas calculated / chain verified)
    1: Failure (a formula failed, chain discrepancies, internal error)
    2: Invalid input (bad JSON, bad formula file, unknown formula)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from takeoff.calc.engine import AssemblyCalculator
from takeoff.calc.formulas.loader import get_formulas_path, load_formula_definitions
from takeoff.calc.formulas.registry import FormulaRegistry, check_formula
from takeoff.errors import EngineError, FormulaConfigError, SecurityError, ValidationError
from takeoff.ledger.ledger import CalculationLedger
from takeoff.models.ledger_entry import LedgerEventKind
from takeoff.models.quantity import Quantity
from takeoff.orchestrator import QuantityOrchestrator
from takeoff.persistence import SqlCalculationStore, get_calculation_store
from takeoff.persistence.db import create_store_engine
from takeoff.persistence.store import CalculationStore
from takeoff.pricing import check_rates, outcome_dicts

logger = logging.getLogger(__name__)

TAKEOFF_LOG_LEVEL_ENV = "TAKEOFF_LOG_LEVEL"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID_INPUT = 2


def _output_json(data: Any) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _make_error(code: str, message: str, details: Any = None) -> dict[str, Any]:
    return {"error": {"code": code, "details": details, "message": message}, "pass": False}


def _configure_logging(level: str | None) -> None:
    level_name = (level or os.environ.get(TAKEOFF_LOG_LEVEL_ENV) or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _open_store(args: argparse.Namespace) -> CalculationStore:
    if args.database_url:
        return SqlCalculationStore(create_store_engine(args.database_url))
    return get_calculation_store()


def _load_registry(args: argparse.Namespace) -> FormulaRegistry:
    registry = FormulaRegistry()
    registry.register_all(load_formula_definitions(args.formulas))
    return registry


def _load_inputs(input_path: str | None) -> tuple[dict[str, Quantity] | None, str | None]:
    """Load the input quantities from a file or stdin.

    Returns:
        Tuple of (inputs, error_message). If error_message is not None,
        inputs should be ignored.
    """
    try:
        if input_path:
            with open(input_path, encoding="utf-8") as f:
                content = f.read()
        else:
            content = sys.stdin.read()
    except FileNotFoundError:
        return None, f"File not found: {input_path}"
    except OSError as e:
        return None, f"Cannot read input: {e}"

    if not content.strip():
        return None, "Empty input"
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as e:
        return None, f"Invalid JSON: {e}"
    if not isinstance(raw, dict):
        return None, "Input must be a JSON object of name -> {value, unit}"

    try:
        return {name: Quantity.model_validate(q) for name, q in raw.items()}, None
    except PydanticValidationError as e:
        return None, f"Invalid quantity: {e.errors()[0]['msg']}"


def _parse_rates(options: list[str] | None) -> tuple[dict[str, Quantity] | None, str | None]:
    """Parse repeated ID=AMOUNT:UNIT options into formula id -> rate.

    Returns:
        Tuple of (rates, error_message), like _load_inputs.
    """
    rates: dict[str, Quantity] = {}
    for option in options or []:
        formula_id, _, rate_text = option.partition("=")
        amount, _, unit = rate_text.rpartition(":")
        if not formula_id or not amount or not unit:
            return None, f"Invalid rate {option!r}: expected ID=AMOUNT:UNIT"
        if formula_id in rates:
            return None, f"Duplicate rate for {formula_id}"
        try:
            rates[formula_id] = Quantity.model_validate({"value": amount, "unit": unit})
        except PydanticValidationError as e:
            return None, f"Invalid rate {option!r}: {e.errors()[0]['msg']}"
    return rates, None


def cmd_formulas_check(args: argparse.Namespace) -> int:
    """Load a formula file and run every definition through the grammar.

    Exit codes:
        0: every formula loads and compiles
        2: the file is unreadable, or any formula is rejected
    """
    path = args.formulas or get_formulas_path()
    try:
        formulas = load_formula_definitions(path)
    except FormulaConfigError as e:
        _output_json(_make_error(e.code, e.message, e.context))
        return EXIT_INVALID_INPUT

    rejected = []
    for formula in formulas:
        try:
            check_formula(formula)
        except SecurityError as e:
            rejected.append(e.to_dict())

    _output_json(
        {
            "errors": rejected,
            "formulas": sorted(f.formula_id for f in formulas),
            "pass": not rejected,
            "source": str(path),
        }
    )
    return EXIT_OK if not rejected else EXIT_INVALID_INPUT


def cmd_calculate(args: argparse.Namespace) -> int:
    """Calculate an element's quantities and record them in the ledger.

    Exit codes:
        0: every formula produced a result
        1: at least one formula failed (its ledger entry is still recorded)
        2: invalid input JSON, unusable rate or unknown formula id
    """
    inputs, error_msg = _load_inputs(args.input)
    if error_msg is not None or inputs is None:
        _output_json(_make_error("INVALID_INPUT", error_msg or "No inputs"))
        return EXIT_INVALID_INPUT
    rates, error_msg = _parse_rates(args.rate)
    if error_msg is not None or rates is None:
        _output_json(_make_error("INVALID_INPUT", error_msg or "No rates"))
        return EXIT_INVALID_INPUT

    orchestrator = QuantityOrchestrator(
        AssemblyCalculator(), CalculationLedger(_open_store(args)), registry=_load_registry(args)
    )
    try:
        check_rates(orchestrator.registry, rates)
        if args.classification:
            outcomes = orchestrator.calculate_for_classification(
                args.project, args.element, args.classification, inputs
            )
        else:
            outcomes = orchestrator.calculate_for_element(
                args.project, args.element, inputs, args.formula
            )
    except (FormulaConfigError, ValidationError) as e:
        _output_json(_make_error(e.code, e.message, e.context))
        return EXIT_INVALID_INPUT

    all_ok = all(o.ok for o in outcomes)
    _output_json(
        {
            "element_id": args.element,
            "outcomes": outcome_dicts(outcomes, rates),
            "pass": all_ok,
            "project_id": args.project,
        }
    )
    return EXIT_OK if all_ok else EXIT_FAILURE


def cmd_ledger_show(args: argparse.Namespace) -> int:
    ledger = CalculationLedger(_open_store(args))
    event_kind = LedgerEventKind(args.event_kind) if args.event_kind else None
    entries = ledger.entries_for(
        args.project, event_kind=event_kind, calculation_id=args.calculation_id
    )
    _output_json(
        {
            "entries": [e.model_dump(mode="json") for e in entries],
            "project_id": args.project,
        }
    )
    return EXIT_OK


def cmd_ledger_verify(args: argparse.Namespace) -> int:
    """Verify a project's chain.

    Exit codes:
        0: no discrepancies
        1: at least one discrepancy (never repaired)
    """
    report = CalculationLedger(_open_store(args)).verify_chain(args.project)
    payload = report.model_dump(mode="json")
    payload["flagged_sequences"] = report.flagged_sequences
    payload["pass"] = report.ok
    _output_json(payload)
    return EXIT_OK if report.ok else EXIT_FAILURE


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="takeoff",
        description="Takeoff - deterministic quantity calculation engine",
    )
    parser.add_argument(
        "--formulas",
        metavar="PATH",
        default=None,
        help="Formula YAML file (default: TAKEOFF_FORMULAS_PATH or the core set)",
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy URL of the calculation store (default: TAKEOFF_DATABASE_URL)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: TAKEOFF_LOG_LEVEL or WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # formulas command with check subcommand
    formulas_parser = subparsers.add_parser("formulas", help="Formula configuration")
    formulas_subparsers = formulas_parser.add_subparsers(
        dest="formulas_command", help="Formula subcommands"
    )
    formulas_subparsers.add_parser("check", help="Load and compile every formula")

    # calculate command
    calculate_parser = subparsers.add_parser(
        "calculate", help="Calculate quantities for an element"
    )
    calculate_parser.add_argument("--project", required=True, help="Project id")
    calculate_parser.add_argument("--element", required=True, help="Element id")
    selection = calculate_parser.add_mutually_exclusive_group(required=True)
    selection.add_argument(
        "--formula",
        action="append",
        metavar="ID",
        help="Formula id to run (repeatable)",
    )
    selection.add_argument(
        "--classification",
        metavar="NAME",
        help="Run every formula registered for this classification",
    )
    calculate_parser.add_argument(
        "--input",
        default=None,
        metavar="PATH",
        help="Path to input JSON (reads from stdin if omitted)",
    )
    calculate_parser.add_argument(
        "--rate",
        action="append",
        metavar="ID=AMOUNT:UNIT",
        help="Price a formula's result, e.g. wall_net_area_v1=42.50:per_m2 (repeatable)",
    )

    # ledger command with show and verify subcommands
    ledger_parser = subparsers.add_parser("ledger", help="Calculation ledger operations")
    ledger_subparsers = ledger_parser.add_subparsers(
        dest="ledger_command", help="Ledger subcommands"
    )
    show_parser = ledger_subparsers.add_parser("show", help="Print a project's entries")
    show_parser.add_argument("--project", required=True, help="Project id")
    show_parser.add_argument(
        "--event-kind",
        choices=[k.value for k in LedgerEventKind],
        default=None,
        help="Only entries of this kind",
    )
    show_parser.add_argument("--calculation-id", default=None, help="Only entries for this result")
    verify_parser = ledger_subparsers.add_parser("verify", help="Verify a project's chain")
    verify_parser.add_argument("--project", required=True, help="Project id")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Failure / internal error
        2: Invalid input
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    try:
        if args.command is None:
            parser.print_help()
            return EXIT_OK

        if args.command == "formulas":
            if getattr(args, "formulas_command", None) == "check":
                return cmd_formulas_check(args)
            parser.parse_args(["formulas", "--help"])
            return EXIT_OK

        if args.command == "calculate":
            return cmd_calculate(args)

        if args.command == "ledger":
            ledger_command = getattr(args, "ledger_command", None)
            if ledger_command == "show":
                return cmd_ledger_show(args)
            if ledger_command == "verify":
                return cmd_ledger_verify(args)
            parser.parse_args(["ledger", "--help"])
            return EXIT_OK

        return EXIT_OK

    except FormulaConfigError as e:
        _output_json(_make_error(e.code, e.message, e.context))
        return EXIT_INVALID_INPUT
    except EngineError as e:
        logger.error("%s: %s", e.code, e.message)
        _output_json(_make_error(e.code, e.message, e.context))
        return EXIT_FAILURE
    except Exception as e:
        # Fail-closed: unexpected errors return exit code 1
        logger.exception("Unexpected error")
        _output_json(_make_error("INTERNAL_ERROR", str(e)))
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
