"""
Error taxonomy for the identity_access bounded context.

Why: Domain services raise typed errors carrying an `ErrorKind`; only the web
adapter maps kinds to HTTP status codes. Two shapes exist at the boundary:
OAuth2 `{error, error_description}` for the token endpoint and multi-issue
parameter validation for authorize/launch.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class IdentityAccessError(Exception):
    """Base error; `kind` drives the HTTP mapping in the web adapter."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, kind: ErrorKind | None = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


@dataclass(frozen=True)
class ValidationIssue:
    location: str
    message: str
    diagnostics: str | None = None


class ParameterValidationError(IdentityAccessError):
    """Authorize/launch parameter failure with one or more located issues."""

    def __init__(self, issues: Iterable[ValidationIssue], *, kind: ErrorKind = ErrorKind.VALIDATION):
        self.issues = list(issues)
        message = "; ".join(issue.message for issue in self.issues) or "invalid parameters"
        super().__init__(message, kind=kind)

    @classmethod
    def single(
        cls,
        location: str,
        message: str,
        *,
        diagnostics: str | None = None,
        kind: ErrorKind = ErrorKind.VALIDATION,
    ) -> "ParameterValidationError":
        return cls([ValidationIssue(location=location, message=message, diagnostics=diagnostics)], kind=kind)


# OAuth2 error codes that mean the client or grant itself was rejected.
_UNAUTHORIZED_OAUTH_ERRORS = frozenset({"invalid_client", "invalid_grant"})


class OAuth2Error(IdentityAccessError):
    """Token-endpoint failure in RFC 6749 shape."""

    def __init__(self, error: str, error_description: str, *, kind: ErrorKind | None = None):
        if kind is None:
            kind = ErrorKind.UNAUTHORIZED if error in _UNAUTHORIZED_OAUTH_ERRORS else ErrorKind.VALIDATION
            if error == "server_error":
                kind = ErrorKind.UNAVAILABLE
        super().__init__(error_description, kind=kind)
        self.error = error
        self.error_description = error_description

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.error_description}


class StateValidationError(IdentityAccessError):
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(IdentityAccessError):
    kind = ErrorKind.FORBIDDEN


class NotFoundError(IdentityAccessError):
    kind = ErrorKind.NOT_FOUND


class AdminUnavailableError(IdentityAccessError):
    """The admin API could not be authenticated against (fatal for the call)."""

    kind = ErrorKind.UNAVAILABLE


class ConfigurationError(IdentityAccessError):
    kind = ErrorKind.UNAVAILABLE


__all__ = [
    "ErrorKind",
    "IdentityAccessError",
    "ValidationIssue",
    "ParameterValidationError",
    "OAuth2Error",
    "StateValidationError",
    "ForbiddenError",
    "NotFoundError",
    "AdminUnavailableError",
    "ConfigurationError",
]
