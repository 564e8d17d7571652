"""Health check endpoint for the Takeoff API."""

from datetime import UTC, datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from takeoff import __version__
from takeoff.api.deps import get_orchestrator

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    time: str
    version: str
    formulas: int


@router.get("/health", response_model=HealthResponse)
def get_health(request: Request) -> HealthResponse:
    """Report liveness, server time and how many formulas are loaded."""
    orchestrator = get_orchestrator(request)
    return HealthResponse(
        status="ok",
        time=datetime.now(UTC).isoformat(),
        version=__version__,
        formulas=len(orchestrator.registry.list_registered()),
    )
