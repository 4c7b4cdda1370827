"""Error taxonomy for the orchestration engine.

Every exception carries an ``ErrorCategory`` so the API and CLI layers can
decide how to surface it without matching on message text.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Classification of failures.

    Categories decide whether a failure is retried on the next tick or
    returned to the caller.
    """
    TRANSIENT = "transient"          # Network/process call failed - retried on next tick
    VALIDATION = "validation"        # Rejected before any external call
    PARTIAL_BATCH = "partial_batch"  # One item of a batch failed
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"


class OrchestratorError(Exception):
    """Base class for all engine errors."""

    category: ErrorCategory = ErrorCategory.TRANSIENT

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class GatewayError(OrchestratorError):
    """A tracker or session gateway call failed."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, message: str, command: Optional[list[str]] = None, stderr: str = ""):
        super().__init__(message, classify_error(f"{message}\n{stderr}"))
        self.command = command
        self.stderr = stderr


class ValidationError(OrchestratorError):
    """Request rejected before any external call was made."""

    category = ErrorCategory.VALIDATION


class ConfigError(ValidationError):
    """Configuration file could not be loaded."""


class InvalidTransitionError(OrchestratorError):
    """Pipeline item can't move to the requested state."""

    category = ErrorCategory.STATE_CONFLICT


class SessionConflictError(OrchestratorError):
    """A session with this name is already running."""

    category = ErrorCategory.STATE_CONFLICT


class SessionNotRestartableError(OrchestratorError):
    """Only stopped sessions that still carry issue metadata can be restarted."""

    category = ErrorCategory.STATE_CONFLICT


class SessionNotFoundError(OrchestratorError):
    """No session with this name exists."""

    category = ErrorCategory.NOT_FOUND


class NotFoundError(OrchestratorError):
    """Issue, phase or pipeline item is unknown."""

    category = ErrorCategory.NOT_FOUND


def classify_error(error_text: str) -> ErrorCategory:
    """Classify raw gateway output.

    Args:
        error_text: Error message or stderr of the failed call

    Returns:
        ErrorCategory for the failure. Anything unrecognised is transient,
        so the next tick retries it.
    """
    if not error_text:
        return ErrorCategory.TRANSIENT

    error_lower = error_text.lower()

    if any(phrase in error_lower for phrase in [
        "could not resolve to",
        "not found",
        "no such",
        "can't find session",
        "404",
    ]):
        return ErrorCategory.NOT_FOUND

    if any(phrase in error_lower for phrase in [
        "duplicate session",
        "already exists",
        "merge conflict",
        "not mergeable",
    ]):
        return ErrorCategory.STATE_CONFLICT

    return ErrorCategory.TRANSIENT
