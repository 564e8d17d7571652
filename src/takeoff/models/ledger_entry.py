"""Ledger models: events, hash-chained entries, and integrity reports.

Entries are append-only. Corrections are new entries that reference the
old one by entry_id; nothing is ever edited in place.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from takeoff.errors import IntegrityViolation

GENESIS_DIGEST = "0" * 64
"""Stands in for the previous digest of the first entry of every chain."""


class LedgerEventKind(StrEnum):
    """Kinds of calculation events recorded in the ledger."""

    CREATED = "CREATED"
    RECOMPUTED = "RECOMPUTED"
    SUPERSEDED = "SUPERSEDED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    SECURITY_REJECTED = "SECURITY_REJECTED"
    CALCULATION_FAILED = "CALCULATION_FAILED"


class LedgerEvent(BaseModel):
    """An event to append, before sequencing and hashing."""

    kind: LedgerEventKind
    payload: dict[str, Any] = Field(default_factory=dict, description="JSON-native payload")
    calculation_id: str | None = Field(None, description="result_id the event is about")
    references_entry_id: str | None = Field(None, description="Earlier entry this one corrects")

    model_config = {"frozen": True, "extra": "forbid"}


class LedgerEntry(BaseModel):
    """A sequenced, hash-linked ledger record."""

    entry_id: str = Field(..., description="UUID for this entry")
    project_id: str = Field(..., description="Project whose chain this entry belongs to")
    sequence: int = Field(..., ge=1, description="Per-project sequence, contiguous from 1")
    event_kind: LedgerEventKind
    payload: dict[str, Any] = Field(default_factory=dict)
    calculation_id: str | None = None
    references_entry_id: str | None = None
    previous_digest: str = Field(..., description="Digest of the preceding entry, or genesis")
    digest: str = Field(..., description="SHA256 over sequence, event and previous digest")
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"frozen": True, "extra": "forbid"}


class DiscrepancyKind(StrEnum):
    """What verification found wrong with a chain position."""

    DIGEST_MISMATCH = "DIGEST_MISMATCH"
    BROKEN_LINK = "BROKEN_LINK"
    SEQUENCE_GAP = "SEQUENCE_GAP"
    DUPLICATE_SEQUENCE = "DUPLICATE_SEQUENCE"


class IntegrityDiscrepancy(BaseModel):
    """A single problem found by chain verification."""

    sequence: int
    kind: DiscrepancyKind
    message: str
    expected: str | None = None
    actual: str | None = None

    model_config = {"frozen": True, "extra": "forbid"}


class IntegrityReport(BaseModel):
    """Outcome of re-walking a project's chain."""

    project_id: str
    entries_checked: int
    head_digest: str = Field(GENESIS_DIGEST, description="Stored digest of the last entry")
    discrepancies: list[IntegrityDiscrepancy] = Field(default_factory=list)
    verified_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def ok(self) -> bool:
        return not self.discrepancies

    @property
    def flagged_sequences(self) -> list[int]:
        return sorted({d.sequence for d in self.discrepancies})

    def raise_for_violations(self) -> None:
        """Raise IntegrityViolation if any discrepancy was found."""
        if self.discrepancies:
            raise IntegrityViolation(
                f"Ledger for project {self.project_id} failed verification at "
                f"sequence(s) {self.flagged_sequences}",
                context={
                    "discrepancies": [d.model_dump(mode="json") for d in self.discrepancies],
                    "project_id": self.project_id,
                },
            )
