"""Ledger routes consumed by reporting and compliance tooling.

Provides GET /v1/projects/{project_id}/ledger and
GET /v1/projects/{project_id}/ledger/verify.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from takeoff.api.deps import get_orchestrator
from takeoff.models.ledger_entry import IntegrityDiscrepancy, LedgerEntry, LedgerEventKind

router = APIRouter(prefix="/v1", tags=["Ledger"])


class LedgerEntryList(BaseModel):
    project_id: str
    items: list[LedgerEntry]


class IntegrityReportResponse(BaseModel):
    project_id: str
    entries_checked: int
    head_digest: str
    ok: bool
    flagged_sequences: list[int]
    discrepancies: list[IntegrityDiscrepancy]
    verified_at: datetime


@router.get("/projects/{project_id}/ledger", response_model=LedgerEntryList)
def list_ledger_entries(
    request: Request,
    project_id: str,
    event_kind: LedgerEventKind | None = Query(None),
    calculation_id: str | None = Query(None),
) -> LedgerEntryList:
    """Entries in sequence order, optionally filtered by kind or result id."""
    ledger = get_orchestrator(request).ledger
    return LedgerEntryList(
        project_id=project_id,
        items=ledger.entries_for(
            project_id, event_kind=event_kind, calculation_id=calculation_id
        ),
    )


@router.get("/projects/{project_id}/ledger/verify", response_model=IntegrityReportResponse)
def verify_ledger(request: Request, project_id: str) -> IntegrityReportResponse:
    """Re-walk the chain. Discrepancies are reported in the body, never repaired."""
    report = get_orchestrator(request).verify_ledger(project_id)
    return IntegrityReportResponse(
        **report.model_dump(),
        ok=report.ok,
        flagged_sequences=report.flagged_sequences,
    )
