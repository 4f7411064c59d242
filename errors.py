"""
Service-level failures.

Services raise these; main.py turns them into the JSON envelope
``{"success": false, "message": ..., "errors": [...]}`` with the matching
HTTP status.
"""

from typing import List, Optional


class ServiceError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[str]] = None):
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationFailure(ServiceError):
    status_code = 400
    default_message = "Validation failed"


class BusinessRuleViolation(ServiceError):
    """Request is well formed but conflicts with current state (trip full, already joined...)."""

    status_code = 400
    default_message = "Request cannot be completed"


class AuthenticationFailure(ServiceError):
    status_code = 401
    default_message = "Authentication required"


class AuthorizationFailure(ServiceError):
    status_code = 403
    default_message = "Access denied"


class NotFound(ServiceError):
    status_code = 404
    default_message = "Not found"
