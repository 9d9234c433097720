"""Error taxonomy for SignTrail.

Every error a service raises on purpose is a ``SignTrailError`` carrying
an HTTP-style status code and a stable machine-readable code. The API
layer renders them as-is; anything else is a bug and becomes a 500.
"""

from typing import Any, Optional


class SignTrailError(Exception):
    """Base class for all expected failures.

    Args:
        message: Human-readable description, safe to show to clients.
    """

    code = "SIGNTRAIL_ERROR"
    status_code = 500
    default_message = "Unexpected error."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def status(self) -> str:
        """``fail`` for client errors, ``error`` for server errors."""
        return "fail" if self.status_code < 500 else "error"

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "code": self.code, "message": self.message}


class NotFound(SignTrailError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "The requested resource was not found."


class BadRequest(SignTrailError):
    code = "BAD_REQUEST"
    status_code = 400
    default_message = "The request is invalid."


class Forbidden(SignTrailError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Access denied."


class Unauthorized(SignTrailError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required."


class SessionExpired(Unauthorized):
    code = "SESSION_EXPIRED"
    default_message = "Session expired. Please log in again."


class TokenExpired(Unauthorized):
    """The identity provider says the access token is past its lifetime."""

    code = "TOKEN_EXPIRED"
    default_message = "Access token expired."


class TokenInvalid(Unauthorized):
    code = "TOKEN_INVALID"
    default_message = "Access token invalid."


class InternalServerError(SignTrailError):
    """A data-consistency violation or a failed multi-step operation."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500
    default_message = "Internal server error."


class DatabaseError(SignTrailError):
    """Wraps a data-layer failure with a translated message."""

    code = "DATABASE_ERROR"
    status_code = 500
    default_message = "Data store failure."
