"""Hash-chained calculation ledger."""

from takeoff.ledger.chain import compute_entry_digest, serialize_event, verify_entries
from takeoff.ledger.ledger import CalculationLedger

__all__ = [
    "CalculationLedger",
    "compute_entry_digest",
    "serialize_event",
    "verify_entries",
]
