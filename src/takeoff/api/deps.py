"""Request-scoped access to application state."""

from fastapi import Request

from takeoff.orchestrator import QuantityOrchestrator


def get_orchestrator(request: Request) -> QuantityOrchestrator:
    """The orchestrator the app was created with."""
    orchestrator: QuantityOrchestrator = request.app.state.orchestrator
    return orchestrator
