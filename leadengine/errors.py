from __future__ import annotations

from typing import Any


class LeadEngineError(Exception):
    status_code = 400
    code = "lead_engine_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LeadEngineError):
    status_code = 422
    code = "validation_error"

    def __init__(self, message: str, *, error_type: str = "processing_error", details: Any = None) -> None:
        super().__init__(message, details=details)
        self.error_type = error_type


class DuplicateError(LeadEngineError):
    """Raised when a duplicate is rejected outright; callers count it as a skip."""

    status_code = 409
    code = "duplicate"


class NotFoundError(LeadEngineError):
    status_code = 404
    code = "not_found"


class ForbiddenError(LeadEngineError):
    status_code = 403
    code = "forbidden"


class CapacityError(LeadEngineError):
    status_code = 409
    code = "capacity_exceeded"


class NoAgentsAvailable(CapacityError):
    code = "no_agents_available"


class ConflictError(LeadEngineError):
    status_code = 409
    code = "conflict"


class DependencyError(LeadEngineError):
    status_code = 503
    code = "dependency_unavailable"


class AuthenticationError(LeadEngineError):
    status_code = 401
    code = "unauthenticated"
