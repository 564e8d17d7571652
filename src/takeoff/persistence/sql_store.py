"""SQL calculation store (SQLAlchemy Core).

Works against any SQLAlchemy URL; tests run it on SQLite files, production
on PostgreSQL.

Design requirements:
    - Append-only ledger: INSERT only, entries are never updated or deleted
    - (project_id, sequence) is unique, so two writers can never both claim
      a sequence number even across processes
    - Entries and results are written in one transaction
    - Fail closed: any database error raises StoreError
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from takeoff.errors import ConcurrentAppendError, StoreError
from takeoff.hashing import canonical_json_for_hash
from takeoff.models.calculation_result import CalculationResult, ResultStatus
from takeoff.models.ledger_entry import LedgerEntry, LedgerEventKind
from takeoff.persistence.store import _check_batch

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)


class SqlCalculationStore:
    """Calculation store backed by two tables: ledger_entries and calculation_results."""

    _CREATE_STATEMENTS = (
        """
        CREATE TABLE IF NOT EXISTS ledger_entries (
            entry_id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            sequence INTEGER NOT NULL,
            event_kind TEXT NOT NULL,
            calculation_id TEXT,
            references_entry_id TEXT,
            payload TEXT NOT NULL,
            previous_digest TEXT NOT NULL,
            digest TEXT NOT NULL,
            recorded_at TEXT NOT NULL,
            UNIQUE (project_id, sequence)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS calculation_results (
            result_id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            element_id TEXT NOT NULL,
            formula_id TEXT NOT NULL,
            status TEXT NOT NULL,
            superseded_by TEXT,
            body TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_calculation_results_element
        ON calculation_results (project_id, element_id, formula_id, status)
        """,
    )

    _MAX_SEQUENCE_SQL = text(
        "SELECT MAX(sequence) FROM ledger_entries WHERE project_id = :project_id"
    )

    _INSERT_ENTRY_SQL = text(
        """
        INSERT INTO ledger_entries
        (entry_id, project_id, sequence, event_kind, calculation_id, references_entry_id,
         payload, previous_digest, digest, recorded_at)
        VALUES
        (:entry_id, :project_id, :sequence, :event_kind, :calculation_id, :references_entry_id,
         :payload, :previous_digest, :digest, :recorded_at)
        """
    )

    _SELECT_ENTRIES_SQL = text(
        """
        SELECT entry_id, project_id, sequence, event_kind, calculation_id, references_entry_id,
               payload, previous_digest, digest, recorded_at
        FROM ledger_entries
        WHERE project_id = :project_id
        ORDER BY sequence ASC
        """
    )

    _SELECT_LAST_ENTRY_SQL = text(
        """
        SELECT entry_id, project_id, sequence, event_kind, calculation_id, references_entry_id,
               payload, previous_digest, digest, recorded_at
        FROM ledger_entries
        WHERE project_id = :project_id
        ORDER BY sequence DESC
        LIMIT 1
        """
    )

    _SUPERSEDE_SQL = text(
        """
        UPDATE calculation_results
        SET status = :superseded, superseded_by = :result_id
        WHERE project_id = :project_id AND element_id = :element_id
            AND formula_id = :formula_id AND status = :live
        """
    )

    _INSERT_RESULT_SQL = text(
        """
        INSERT INTO calculation_results
        (result_id, project_id, element_id, formula_id, status, superseded_by, body, created_at)
        VALUES
        (:result_id, :project_id, :element_id, :formula_id, :status, :superseded_by, :body,
         :created_at)
        """
    )

    _SELECT_RESULT_COLUMNS = "SELECT status, superseded_by, body FROM calculation_results"

    def __init__(self, engine: Engine, create_schema: bool = True) -> None:
        """Initialize the store.

        Args:
            engine: SQLAlchemy engine.
            create_schema: Create tables if they don't exist.

        Raises:
            StoreError: If the schema cannot be created.
        """
        self._engine = engine
        if create_schema:
            self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        try:
            with self._engine.begin() as conn:
                for statement in self._CREATE_STATEMENTS:
                    conn.execute(text(statement))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to initialize calculation store: {e}") from e
        logger.info("Initialized calculation store schema")

    def last_entry(self, project_id: str) -> LedgerEntry | None:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    self._SELECT_LAST_ENTRY_SQL, {"project_id": project_id}
                ).mappings().first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read ledger head: {e}") from e
        return _row_to_entry(row) if row is not None else None

    def commit(
        self,
        project_id: str,
        entries: Sequence[LedgerEntry],
        expected_last_sequence: int,
        results: Sequence[CalculationResult] = (),
    ) -> None:
        """Append entries and persist results in a single transaction.

        Raises:
            ConcurrentAppendError: If another writer moved the chain head, or
                won the race to insert the same sequence number.
            StoreError: On any other database failure.
        """
        _check_batch(project_id, entries, expected_last_sequence, results)
        try:
            with self._engine.begin() as conn:
                current = conn.execute(
                    self._MAX_SEQUENCE_SQL, {"project_id": project_id}
                ).scalar()
                current = int(current or 0)
                if current != expected_last_sequence:
                    raise ConcurrentAppendError(project_id, expected_last_sequence, current)

                for entry in entries:
                    conn.execute(self._INSERT_ENTRY_SQL, _entry_to_row(entry))
                for result in results:
                    self._insert_result(conn, result)
        except IntegrityError as e:
            logger.warning(
                "Sequence conflict committing to project %s after %d", project_id,
                expected_last_sequence,
            )
            raise ConcurrentAppendError(project_id, expected_last_sequence, None) from e
        except SQLAlchemyError as e:
            raise StoreError(
                f"Failed to commit ledger batch: {e}", context={"project_id": project_id}
            ) from e

        logger.debug(
            "Committed %d ledger entries and %d results for project %s",
            len(entries),
            len(results),
            project_id,
        )

    def _insert_result(self, conn: Connection, result: CalculationResult) -> None:
        conn.execute(
            self._SUPERSEDE_SQL,
            {
                "element_id": result.element_id,
                "formula_id": result.formula_id,
                "live": ResultStatus.LIVE.value,
                "project_id": result.project_id,
                "result_id": result.result_id,
                "superseded": ResultStatus.SUPERSEDED.value,
            },
        )
        conn.execute(
            self._INSERT_RESULT_SQL,
            {
                "body": result.model_dump_json(),
                "created_at": result.created_at.isoformat(),
                "element_id": result.element_id,
                "formula_id": result.formula_id,
                "project_id": result.project_id,
                "result_id": result.result_id,
                "status": result.status.value,
                "superseded_by": result.superseded_by,
            },
        )

    def list_entries(self, project_id: str) -> list[LedgerEntry]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    self._SELECT_ENTRIES_SQL, {"project_id": project_id}
                ).mappings().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read ledger entries: {e}") from e
        return [_row_to_entry(row) for row in rows]

    def live_result(
        self, project_id: str, element_id: str, formula_id: str
    ) -> CalculationResult | None:
        results = self._select_results(
            "WHERE project_id = :project_id AND element_id = :element_id "
            "AND formula_id = :formula_id AND status = :status",
            {
                "element_id": element_id,
                "formula_id": formula_id,
                "project_id": project_id,
                "status": ResultStatus.LIVE.value,
            },
        )
        return results[0] if results else None

    def get_result(self, project_id: str, result_id: str) -> CalculationResult | None:
        results = self._select_results(
            "WHERE project_id = :project_id AND result_id = :result_id",
            {"project_id": project_id, "result_id": result_id},
        )
        return results[0] if results else None

    def list_results(
        self,
        project_id: str,
        element_id: str | None = None,
        include_superseded: bool = False,
    ) -> list[CalculationResult]:
        clauses = ["project_id = :project_id"]
        params: dict[str, Any] = {"project_id": project_id}
        if element_id is not None:
            clauses.append("element_id = :element_id")
            params["element_id"] = element_id
        if not include_superseded:
            clauses.append("status = :status")
            params["status"] = ResultStatus.LIVE.value
        results = self._select_results("WHERE " + " AND ".join(clauses), params)
        results.sort(key=lambda r: (r.element_id, r.formula_id, r.created_at))
        return results

    def _select_results(self, where: str, params: dict[str, Any]) -> list[CalculationResult]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    text(f"{self._SELECT_RESULT_COLUMNS} {where}"), params
                ).mappings().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read calculation results: {e}") from e

        results = []
        for row in rows:
            result = CalculationResult.model_validate_json(row["body"])
            results.append(
                result.model_copy(
                    update={
                        "status": ResultStatus(row["status"]),
                        "superseded_by": row["superseded_by"],
                    }
                )
            )
        return results


def _entry_to_row(entry: LedgerEntry) -> dict[str, Any]:
    return {
        "calculation_id": entry.calculation_id,
        "digest": entry.digest,
        "entry_id": entry.entry_id,
        "event_kind": entry.event_kind.value,
        "payload": canonical_json_for_hash(entry.payload),
        "previous_digest": entry.previous_digest,
        "project_id": entry.project_id,
        "recorded_at": entry.recorded_at.isoformat(),
        "references_entry_id": entry.references_entry_id,
        "sequence": entry.sequence,
    }


def _row_to_entry(row: Any) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        project_id=row["project_id"],
        sequence=int(row["sequence"]),
        event_kind=LedgerEventKind(row["event_kind"]),
        payload=json.loads(row["payload"]),
        calculation_id=row["calculation_id"],
        references_entry_id=row["references_entry_id"],
        previous_digest=row["previous_digest"],
        digest=row["digest"],
        recorded_at=datetime.fromisoformat(row["recorded_at"]),
    )
