"""
core/errors.py -- Error taxonomy shared by every AuthCore layer.

Services raise these; they never signal failure with a sentinel return value.
The HTTP boundary (api/main.py) maps each kind to a status code and the same
{"error": {"code", "message"}} envelope used for every other error.

Security-sensitive failures (login, token verification) use one generic
message per operation regardless of the underlying cause. That collapsing
happens here in the service layer, not at the boundary.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. `code` is a stable machine-readable identifier."""

    code = "auth_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConflictError(AuthError):
    code = "conflict"


class AuthenticationError(AuthError):
    code = "unauthorized"


class NotFoundError(AuthError):
    code = "not_found"


class BadRequestError(AuthError):
    code = "bad_request"


class ValidationError(AuthError):
    code = "validation_error"


class ConfigurationError(AuthError):
    """Missing or unsafe setting detected at startup. Not recoverable per request."""

    code = "configuration_error"
