"""Canonical JSON serialization and SHA-256 helpers.

Every digest in the engine (formula hashes, reproducibility hashes, ledger
entry digests) is computed over the canonical form produced here.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def canonical_json_for_hash(obj: Any) -> str:
    """Serialize object to canonical JSON for hashing.

    Rules:
    - All keys sorted alphabetically (recursive)
    - Decimal values serialized as strings
    - Enums serialized by value, datetimes as ISO-8601
    - Tuples serialized as lists
    - No whitespace
    - UTF-8 encoding

    Args:
        obj: Object to serialize.

    Returns:
        Canonical JSON string.
    """

    def normalize(value: Any) -> Any:
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, dict):
            return {str(k): normalize(v) for k, v in sorted(value.items())}
        if isinstance(value, list | tuple):
            return [normalize(item) for item in value]
        return value

    normalized = normalize(obj)
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_sha256(data: str) -> str:
    """Compute SHA256 hash of a string.

    Args:
        data: String to hash.

    Returns:
        Lowercase hexadecimal hash string.
    """
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
