"""Hash-chain primitives for the calculation ledger.

digest(n) = SHA256(canonical_json({sequence, event, previous_digest}))

where event is the canonical serialization of the entry's project, kind,
payload and references, and previous_digest is digest(n-1) or the genesis
digest for sequence 1. recorded_at is not part of the digest; stores may
re-serialize timestamps.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from takeoff.hashing import canonical_json_for_hash, compute_sha256
from takeoff.models.ledger_entry import (
    GENESIS_DIGEST,
    DiscrepancyKind,
    IntegrityDiscrepancy,
    LedgerEntry,
    LedgerEventKind,
)


def serialize_event(
    project_id: str,
    event_kind: LedgerEventKind,
    payload: dict[str, Any],
    calculation_id: str | None,
    references_entry_id: str | None,
) -> str:
    """Canonical JSON of the hashed fields of an event."""
    return canonical_json_for_hash(
        {
            "calculation_id": calculation_id,
            "event_kind": event_kind,
            "payload": payload,
            "project_id": project_id,
            "references_entry_id": references_entry_id,
        }
    )


def compute_entry_digest(sequence: int, serialized_event: str, previous_digest: str) -> str:
    return compute_sha256(
        canonical_json_for_hash(
            {
                "event": serialized_event,
                "previous_digest": previous_digest,
                "sequence": sequence,
            }
        )
    )


def digest_of(entry: LedgerEntry) -> str:
    """Recompute an entry's digest from its own stored fields."""
    serialized = serialize_event(
        entry.project_id,
        entry.event_kind,
        entry.payload,
        entry.calculation_id,
        entry.references_entry_id,
    )
    return compute_entry_digest(entry.sequence, serialized, entry.previous_digest)


def verify_entries(entries: Iterable[LedgerEntry]) -> list[IntegrityDiscrepancy]:
    """Walk a chain from genesis and report every inconsistent position.

    Each entry's digest is recomputed from its own stored previous_digest, so
    editing one entry's content flags exactly that entry; the successor still
    links to the stored (unchanged) digest. Rewriting an entry's digest as
    well breaks the successor's link, which flags the successor.
    """
    discrepancies: list[IntegrityDiscrepancy] = []
    expected_sequence = 1
    previous: LedgerEntry | None = None

    for entry in sorted(entries, key=lambda e: e.sequence):
        if previous is not None and entry.sequence == previous.sequence:
            discrepancies.append(
                IntegrityDiscrepancy(
                    sequence=entry.sequence,
                    kind=DiscrepancyKind.DUPLICATE_SEQUENCE,
                    message=f"Sequence {entry.sequence} appears more than once",
                    expected=previous.entry_id,
                    actual=entry.entry_id,
                )
            )
            continue

        if entry.sequence != expected_sequence:
            discrepancies.append(
                IntegrityDiscrepancy(
                    sequence=entry.sequence,
                    kind=DiscrepancyKind.SEQUENCE_GAP,
                    message=f"Expected sequence {expected_sequence}, found {entry.sequence}",
                    expected=str(expected_sequence),
                    actual=str(entry.sequence),
                )
            )
        else:
            expected_link = previous.digest if previous is not None else GENESIS_DIGEST
            if entry.previous_digest != expected_link:
                discrepancies.append(
                    IntegrityDiscrepancy(
                        sequence=entry.sequence,
                        kind=DiscrepancyKind.BROKEN_LINK,
                        message=f"Entry {entry.sequence} does not link to its predecessor",
                        expected=expected_link,
                        actual=entry.previous_digest,
                    )
                )

        recomputed = digest_of(entry)
        if recomputed != entry.digest:
            discrepancies.append(
                IntegrityDiscrepancy(
                    sequence=entry.sequence,
                    kind=DiscrepancyKind.DIGEST_MISMATCH,
                    message=f"Entry {entry.sequence} content does not match its digest",
                    expected=recomputed,
                    actual=entry.digest,
                )
            )

        previous = entry
        expected_sequence = entry.sequence + 1

    return discrepancies
