"""Persistence boundary for ledger entries and calculation results.

The engine defines what must be stored, not how. Every backend implements
the CalculationStore protocol; commit() writes a batch of ledger entries and
the results they describe together or not at all, and refuses the batch if
the project's chain has moved past the sequence the caller built on.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from takeoff.errors import ConcurrentAppendError, StoreError
from takeoff.models.calculation_result import CalculationResult, ResultStatus
from takeoff.models.ledger_entry import LedgerEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class CalculationStore(Protocol):
    """Structural interface for calculation storage backends.

    Both InMemoryCalculationStore and SqlCalculationStore satisfy this
    protocol. Use this type in signatures that accept either backend.
    """

    def last_entry(self, project_id: str) -> LedgerEntry | None: ...

    def commit(
        self,
        project_id: str,
        entries: Sequence[LedgerEntry],
        expected_last_sequence: int,
        results: Sequence[CalculationResult] = (),
    ) -> None: ...

    def list_entries(self, project_id: str) -> list[LedgerEntry]: ...

    def live_result(
        self, project_id: str, element_id: str, formula_id: str
    ) -> CalculationResult | None: ...

    def get_result(self, project_id: str, result_id: str) -> CalculationResult | None: ...

    def list_results(
        self,
        project_id: str,
        element_id: str | None = None,
        include_superseded: bool = False,
    ) -> list[CalculationResult]: ...


@dataclass
class _ProjectState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: list[LedgerEntry] = field(default_factory=list)
    results: dict[str, CalculationResult] = field(default_factory=dict)
    live: dict[tuple[str, str], str] = field(default_factory=dict)


class InMemoryCalculationStore:
    """Process-local store for tests and single-process use.

    State is partitioned per project, each partition with its own lock, so
    writers on different projects never contend.
    """

    def __init__(self) -> None:
        self._projects: dict[str, _ProjectState] = {}
        self._projects_guard = threading.Lock()

    def _state(self, project_id: str) -> _ProjectState:
        state = self._projects.get(project_id)
        if state is None:
            with self._projects_guard:
                state = self._projects.setdefault(project_id, _ProjectState())
        return state

    def last_entry(self, project_id: str) -> LedgerEntry | None:
        state = self._state(project_id)
        with state.lock:
            return state.entries[-1] if state.entries else None

    def commit(
        self,
        project_id: str,
        entries: Sequence[LedgerEntry],
        expected_last_sequence: int,
        results: Sequence[CalculationResult] = (),
    ) -> None:
        """Append entries and persist results atomically.

        Raises:
            ConcurrentAppendError: If the chain head is not expected_last_sequence.
            StoreError: If an entry or result belongs to another project, or
                the batch is not contiguous.
        """
        _check_batch(project_id, entries, expected_last_sequence, results)
        state = self._state(project_id)
        with state.lock:
            current = state.entries[-1].sequence if state.entries else 0
            if current != expected_last_sequence:
                raise ConcurrentAppendError(project_id, expected_last_sequence, current)

            state.entries.extend(entries)
            for result in results:
                key = (result.element_id, result.formula_id)
                previous_id = state.live.get(key)
                if previous_id is not None:
                    state.results[previous_id] = state.results[previous_id].superseded(
                        result.result_id
                    )
                state.results[result.result_id] = result
                state.live[key] = result.result_id

        logger.debug(
            "Committed %d ledger entries and %d results for project %s",
            len(entries),
            len(results),
            project_id,
        )

    def list_entries(self, project_id: str) -> list[LedgerEntry]:
        state = self._state(project_id)
        with state.lock:
            return sorted(state.entries, key=lambda e: e.sequence)

    def live_result(
        self, project_id: str, element_id: str, formula_id: str
    ) -> CalculationResult | None:
        state = self._state(project_id)
        with state.lock:
            result_id = state.live.get((element_id, formula_id))
            return state.results[result_id] if result_id is not None else None

    def get_result(self, project_id: str, result_id: str) -> CalculationResult | None:
        state = self._state(project_id)
        with state.lock:
            return state.results.get(result_id)

    def list_results(
        self,
        project_id: str,
        element_id: str | None = None,
        include_superseded: bool = False,
    ) -> list[CalculationResult]:
        state = self._state(project_id)
        with state.lock:
            results = [
                r
                for r in state.results.values()
                if (element_id is None or r.element_id == element_id)
                and (include_superseded or r.status == ResultStatus.LIVE)
            ]
        results.sort(key=lambda r: (r.element_id, r.formula_id, r.created_at))
        return results


def _check_batch(
    project_id: str,
    entries: Sequence[LedgerEntry],
    expected_last_sequence: int,
    results: Sequence[CalculationResult],
) -> None:
    """Reject malformed batches before touching storage."""
    if not entries:
        raise StoreError(
            "Refusing to commit an empty ledger batch", context={"project_id": project_id}
        )
    for offset, entry in enumerate(entries, start=1):
        if entry.project_id != project_id:
            raise StoreError(
                "Ledger entry belongs to another project",
                context={"entry_project_id": entry.project_id, "project_id": project_id},
            )
        if entry.sequence != expected_last_sequence + offset:
            raise StoreError(
                "Ledger batch is not contiguous",
                context={
                    "expected_sequence": expected_last_sequence + offset,
                    "project_id": project_id,
                    "sequence": entry.sequence,
                },
            )
    for result in results:
        if result.project_id != project_id:
            raise StoreError(
                "Calculation result belongs to another project",
                context={"project_id": project_id, "result_project_id": result.project_id},
            )
