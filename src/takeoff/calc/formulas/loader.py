"""YAML loading of formula definitions.

File layout:

    formulas:
      - formula_id: wall_net_area_v1
        expression: "length * height - opening_area"
        output_unit: m2
        inputs:
          - {name: length, unit: m, min_value: 0, min_exclusive: true}
          ...

Loading fails closed: any malformed document or definition raises
FormulaConfigError and nothing from the file is returned.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from takeoff.errors import FormulaConfigError
from takeoff.models.formula_definition import FormulaDefinition

logger = logging.getLogger(__name__)

TAKEOFF_FORMULAS_PATH_ENV = "TAKEOFF_FORMULAS_PATH"
CORE_FORMULAS_PATH = Path(__file__).parent / "core.yaml"


def get_formulas_path() -> Path:
    """Formula file from TAKEOFF_FORMULAS_PATH, falling back to the packaged core set."""
    env_path = os.environ.get(TAKEOFF_FORMULAS_PATH_ENV)
    if env_path:
        return Path(env_path)
    return CORE_FORMULAS_PATH


def parse_formula_definitions(document: Any, source: str = "<memory>") -> list[FormulaDefinition]:
    """Validate an already-parsed document into FormulaDefinitions.

    Raises:
        FormulaConfigError: If the document shape or any definition is invalid.
    """
    if not isinstance(document, dict) or not isinstance(document.get("formulas"), list):
        raise FormulaConfigError(
            f"{source}: expected a mapping with a 'formulas' list",
            context={"source": source},
        )

    formulas: list[FormulaDefinition] = []
    seen: set[str] = set()
    for index, raw in enumerate(document["formulas"]):
        try:
            formula = FormulaDefinition.model_validate(raw)
        except PydanticValidationError as e:
            formula_id = raw.get("formula_id") if isinstance(raw, dict) else None
            raise FormulaConfigError(
                f"{source}: invalid formula at index {index}",
                formula_id=formula_id,
                context={
                    "errors": [
                        {"loc": [str(p) for p in err["loc"]], "msg": err["msg"]}
                        for err in e.errors()
                    ],
                    "index": index,
                    "source": source,
                },
            ) from e
        if formula.formula_id in seen:
            raise FormulaConfigError(
                f"{source}: duplicate formula_id {formula.formula_id}",
                formula_id=formula.formula_id,
                context={"index": index, "source": source},
            )
        seen.add(formula.formula_id)
        formulas.append(formula)
    return formulas


def load_formula_definitions(path: str | Path | None = None) -> list[FormulaDefinition]:
    """Load formula definitions from a YAML file.

    Args:
        path: File to read. Defaults to get_formulas_path().

    Raises:
        FormulaConfigError: If the file cannot be read or parsed, or any
            definition is invalid.
    """
    file_path = Path(path) if path is not None else get_formulas_path()
    try:
        with open(file_path, encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except OSError as e:
        raise FormulaConfigError(
            f"Cannot read formula file {file_path}: {e}", context={"source": str(file_path)}
        ) from e
    except yaml.YAMLError as e:
        raise FormulaConfigError(
            f"Invalid YAML in {file_path}: {e}", context={"source": str(file_path)}
        ) from e

    formulas = parse_formula_definitions(document, source=str(file_path))
    logger.info("Loaded %d formula definitions from %s", len(formulas), file_path)
    return formulas
