"""
Domain error taxonomy.

Every error the tracking core raises is a TrackingError carrying a stable
machine-readable ``code`` and the HTTP status the API layer maps it to.
"""

from typing import Dict, Optional


class TrackingError(Exception):
    """Base class for all order-tracking domain errors."""

    code: str = "tracking_error"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(TrackingError):
    """Malformed or out-of-range input."""

    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.fields = fields or {}

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.fields:
            body["fields"] = self.fields
        return body


class UnauthorizedError(TrackingError):
    """No verifiable identity was presented."""

    code = "unauthorized"
    status_code = 401


class ForbiddenError(TrackingError):
    """The actor's role or ownership does not permit the operation."""

    code = "forbidden"
    status_code = 403


class NotFoundError(TrackingError):
    code = "not_found"
    status_code = 404


class InvalidTransitionError(TrackingError):
    """Requested status is not a legal successor of the current one."""

    code = "invalid_transition"
    status_code = 409


class AlreadyAssignedError(TrackingError):
    code = "already_assigned"
    status_code = 400


class NoAvailableAgentError(TrackingError):
    code = "no_available_agent"
    status_code = 404


class AssignmentFailedError(TrackingError):
    """An assignment step failed after an agent was claimed; nothing was kept."""

    code = "assignment_failed"
    status_code = 500


class OperationTimeoutError(TrackingError, TimeoutError):
    """The operation's deadline expired before it committed."""

    code = "timeout"
    status_code = 504


class StorageError(TrackingError):
    """The backing store failed."""

    code = "storage_error"
    status_code = 500
