"""Request dependencies shared by the routes."""

from fastapi import Request

from ..errors import ErrorCategory
from ..orchestrator import Orchestrator


STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.STATE_CONFLICT: 409,
    ErrorCategory.PARTIAL_BATCH: 207,
    ErrorCategory.TRANSIENT: 502,
}


def get_orchestrator(request: Request) -> Orchestrator:
    """Get the orchestrator from app state."""
    return request.app.state.orchestrator
