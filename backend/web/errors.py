"""
Map identity_access errors to HTTP responses.

Two shapes exist at the boundary:
- FHIR OperationOutcome for authorize/launch (one issue per validation problem).
- OAuth2 `{error, error_description}` for the token endpoint.
Every response carries `Cache-Control: no-store`.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List
import uuid

from fastapi.responses import JSONResponse

from backend.identity_access.errors import (
    ErrorKind,
    IdentityAccessError,
    OAuth2Error,
    ParameterValidationError,
)
from backend.web.auth_utils import no_store_headers


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAVAILABLE: 503,
}

_ISSUE_CODES = {
    400: "invalid",
    401: "security",
    403: "forbidden",
    404: "not-found",
}


def status_for(exc: IdentityAccessError) -> int:
    if isinstance(exc, OAuth2Error) and exc.kind is not ErrorKind.UNAVAILABLE:
        return 401 if exc.kind is ErrorKind.UNAUTHORIZED else 400
    return STATUS_BY_KIND.get(exc.kind, 400)


def operation_outcome(exc: IdentityAccessError) -> dict:
    status = status_for(exc)
    severity = "fatal" if status >= 500 else "error"
    code = _ISSUE_CODES.get(status, "exception" if status >= 500 else "processing")
    issues: List[dict] = []
    if isinstance(exc, ParameterValidationError) and exc.issues:
        for item in exc.issues:
            issue: dict = {
                "severity": severity,
                "code": code,
                "details": {"text": item.message},
                "expression": [item.location],
            }
            if item.diagnostics:
                issue["diagnostics"] = item.diagnostics
            issues.append(issue)
    else:
        issues.append({"severity": severity, "code": code, "details": {"text": exc.message}})
    return {
        "resourceType": "OperationOutcome",
        "id": f"op-{uuid.uuid4().hex[:12]}",
        "meta": {"lastUpdated": datetime.now(timezone.utc).isoformat()},
        "issue": issues,
    }


def operation_outcome_response(exc: IdentityAccessError) -> JSONResponse:
    return JSONResponse(operation_outcome(exc), status_code=status_for(exc), headers=no_store_headers())


def oauth_error_body(exc: IdentityAccessError) -> dict:
    if isinstance(exc, OAuth2Error):
        return exc.to_dict()
    error = "server_error" if exc.kind is ErrorKind.UNAVAILABLE else "invalid_request"
    return {"error": error, "error_description": exc.message}


def oauth_error_response(exc: IdentityAccessError) -> JSONResponse:
    return JSONResponse(oauth_error_body(exc), status_code=status_for(exc), headers=no_store_headers())


def json_error_response(exc: IdentityAccessError) -> JSONResponse:
    body = {"error": exc.kind.value, "detail": exc.message}
    return JSONResponse(body, status_code=status_for(exc), headers=no_store_headers())
