from __future__ import annotations

from typing import Any


class ApiError(Exception):
    """Base error rendered as ``{"detail", "kind", "status"}`` by the app."""

    status_code = 500
    kind = "internal"
    public_message: str | None = None

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def detail(self) -> str:
        # Internal failures keep their message for the logs only.
        return self.public_message or self.message

    def to_dict(self) -> dict:
        return {"detail": self.detail, "kind": self.kind, "status": self.status_code}


class ValidationError(ApiError):
    status_code = 400
    kind = "validation"


class AuthenticationError(ApiError):
    status_code = 401
    kind = "unauthorized"


class AuthorizationError(ApiError):
    status_code = 403
    kind = "forbidden"


class NotFoundError(ApiError):
    status_code = 404
    kind = "not_found"


class ConflictError(ApiError):
    status_code = 409
    kind = "conflict"


class DatabaseError(ApiError):
    status_code = 500
    kind = "database"
    public_message = "Database error"


class InternalError(ApiError):
    status_code = 500
    kind = "internal"
    public_message = "Internal server error"


class UpstreamUnavailableError(ApiError):
    status_code = 503
    kind = "upstream_unavailable"
