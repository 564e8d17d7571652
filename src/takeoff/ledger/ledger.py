"""Calculation ledger: per-project, append-only, hash-chained event log.

Appends for one project are linearized by a per-project lock held only
while the next sequence is read, digests are computed and the batch is
committed. The store's "expected last sequence" check is the second line:
a writer in another process that raced past the head makes commit raise
ConcurrentAppendError, which the caller retries with a fresh lookup.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from takeoff.errors import ConcurrentAppendError
from takeoff.ledger.chain import compute_entry_digest, serialize_event, verify_entries
from takeoff.models.calculation_result import CalculationResult
from takeoff.models.ledger_entry import (
    GENESIS_DIGEST,
    IntegrityReport,
    LedgerEntry,
    LedgerEvent,
    LedgerEventKind,
)
from takeoff.persistence.store import CalculationStore

logger = logging.getLogger(__name__)


class CalculationLedger:
    """Append and verify hash-chained ledger entries on top of a store."""

    def __init__(self, store: CalculationStore) -> None:
        self._store = store
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def store(self) -> CalculationStore:
        return self._store

    def _lock_for(self, project_id: str) -> threading.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(project_id, threading.Lock())
        return lock

    def head_sequence(self, project_id: str) -> int:
        """Sequence of the project's last entry, 0 for an empty chain."""
        last = self._store.last_entry(project_id)
        return last.sequence if last is not None else 0

    def append(
        self,
        project_id: str,
        event: LedgerEvent,
        results: Sequence[CalculationResult] = (),
    ) -> LedgerEntry:
        """Append one event (and persist the results it describes).

        Raises:
            ConcurrentAppendError: If another writer claimed the next sequence.
            StoreError: If the store rejects the commit.
        """
        return self.append_many(project_id, [event], results=results)[0]

    def append_many(
        self,
        project_id: str,
        events: Sequence[LedgerEvent],
        results: Sequence[CalculationResult] = (),
        expected_last_sequence: int | None = None,
    ) -> list[LedgerEntry]:
        """Append several events in one atomic commit.

        Args:
            project_id: Chain to append to.
            events: Events in the order they are to be sequenced.
            results: Results written in the same commit as the entries.
            expected_last_sequence: If given, the head the caller's events
                were built against; a different head raises instead of
                appending on top of it.

        Returns:
            The persisted entries, in sequence order.

        Raises:
            ConcurrentAppendError: If the head moved.
            StoreError: If the store rejects the commit.
        """
        with self._lock_for(project_id):
            last = self._store.last_entry(project_id)
            head = last.sequence if last is not None else 0
            if expected_last_sequence is not None and expected_last_sequence != head:
                raise ConcurrentAppendError(project_id, expected_last_sequence, head)

            previous_digest = last.digest if last is not None else GENESIS_DIGEST
            recorded_at = datetime.now(UTC)
            entries: list[LedgerEntry] = []
            for offset, event in enumerate(events, start=1):
                sequence = head + offset
                serialized = serialize_event(
                    project_id,
                    event.kind,
                    event.payload,
                    event.calculation_id,
                    event.references_entry_id,
                )
                digest = compute_entry_digest(sequence, serialized, previous_digest)
                entries.append(
                    LedgerEntry(
                        entry_id=str(uuid.uuid4()),
                        project_id=project_id,
                        sequence=sequence,
                        event_kind=event.kind,
                        payload=event.payload,
                        calculation_id=event.calculation_id,
                        references_entry_id=event.references_entry_id,
                        previous_digest=previous_digest,
                        digest=digest,
                        recorded_at=recorded_at,
                    )
                )
                previous_digest = digest

            self._store.commit(project_id, entries, head, results=results)

        logger.debug(
            "Appended %s to project %s at sequence %d..%d",
            [e.event_kind.value for e in entries],
            project_id,
            entries[0].sequence,
            entries[-1].sequence,
        )
        return entries

    def verify_chain(self, project_id: str) -> IntegrityReport:
        """Re-walk the project's chain and collect every discrepancy."""
        entries = self._store.list_entries(project_id)
        discrepancies = verify_entries(entries)
        report = IntegrityReport(
            project_id=project_id,
            entries_checked=len(entries),
            head_digest=entries[-1].digest if entries else GENESIS_DIGEST,
            discrepancies=discrepancies,
        )
        if discrepancies:
            logger.warning(
                "Ledger verification failed for project %s at sequence(s) %s",
                project_id,
                report.flagged_sequences,
            )
        return report

    def entries_for(
        self,
        project_id: str,
        event_kind: LedgerEventKind | None = None,
        calculation_id: str | None = None,
    ) -> list[LedgerEntry]:
        """Read-only, sequence-ordered entries filtered by kind and/or result id."""
        entries = self._store.list_entries(project_id)
        if event_kind is not None:
            entries = [e for e in entries if e.event_kind == event_kind]
        if calculation_id is not None:
            entries = [e for e in entries if e.calculation_id == calculation_id]
        return entries
