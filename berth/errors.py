"""Berth error types.

Error codes are stable strings for programmatic handling. Every error is
rendered by the API exception handler as::

    {"error": {"code", "message", "request_id", "details"}}
"""

from __future__ import annotations

from typing import Any


class BerthError(Exception):
    """Base error for all Berth exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Render as API error body."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "request_id": request_id,
                "details": self.details,
            }
        }


class NotFoundError(BerthError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class AccessDeniedError(BerthError):
    """Principal may not perform the operation (403).

    Also raised when a namespace deletion targets a protected name.
    """

    code = "access_denied"
    message = "Access denied"
    status_code = 403


class ValidationError(BerthError):
    """Request validation error (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class UnauthorizedError(BerthError):
    """Authentication required (401)."""

    code = "unauthorized"
    message = "Authentication required"
    status_code = 401


class InfrastructureTransientError(BerthError):
    """Cluster temporarily unreachable or a best-effort step failed (503)."""

    code = "infrastructure_transient"
    message = "Cluster temporarily unavailable"
    status_code = 503


class InfrastructureFatalError(BerthError):
    """Provisioning failed at a step the operation cannot continue without (502)."""

    code = "infrastructure_fatal"
    message = "Cluster provisioning failed"
    status_code = 502
