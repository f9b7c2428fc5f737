"""
MFA (TOTP) API routes.

Permissions:
    Caller must present a valid bearer access token; every operation applies to
    the caller's own Keycloak account.
"""
from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend.identity_access.domain import Principal
from backend.identity_access.errors import IdentityAccessError
from backend.web.auth_utils import no_store_headers
from backend.web.errors import json_error_response


mfa_router = APIRouter(tags=["MFA"])


class MFASetupRequest(BaseModel):
    label: str | None = Field(default=None, max_length=200)


class MFACodeRequest(BaseModel):
    code: str = Field(default="", max_length=16)


def _unauthenticated() -> JSONResponse:
    headers = {**no_store_headers(), "WWW-Authenticate": "Bearer"}
    return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=headers)


def _principal(request: Request) -> Principal | None:
    auth = request.headers.get("authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    try:
        return request.app.state.services.verify_principal(token.strip())
    except IdentityAccessError:
        return None


def _ok(body: dict) -> JSONResponse:
    return JSONResponse(body, headers=no_store_headers())


@mfa_router.post("/auth/mfa/setup")
async def mfa_setup(request: Request, payload: MFASetupRequest | None = None):
    """Generate a TOTP secret and provisioning URI for the caller."""
    principal = _principal(request)
    if principal is None:
        return _unauthenticated()
    label = (payload.label if payload else None) or principal.id
    try:
        body = request.app.state.services.mfa.setup(principal.identity_provider_user_id, label)
    except IdentityAccessError as exc:
        return json_error_response(exc)
    return _ok(body)


@mfa_router.post("/auth/mfa/verify")
async def mfa_verify(request: Request, payload: MFACodeRequest):
    principal = _principal(request)
    if principal is None:
        return _unauthenticated()
    try:
        body = request.app.state.services.mfa.verify_and_enable(principal.identity_provider_user_id, payload.code)
    except IdentityAccessError as exc:
        return json_error_response(exc)
    return _ok(body)


@mfa_router.post("/auth/mfa/disable")
async def mfa_disable(request: Request, payload: MFACodeRequest):
    principal = _principal(request)
    if principal is None:
        return _unauthenticated()
    try:
        body = request.app.state.services.mfa.disable(principal.identity_provider_user_id, payload.code)
    except IdentityAccessError as exc:
        return json_error_response(exc)
    return _ok(body)


@mfa_router.get("/auth/mfa/status")
async def mfa_status(request: Request):
    """Return `{enabled, required, message}`; required for admin/practitioner."""
    principal = _principal(request)
    if principal is None:
        return _unauthenticated()
    try:
        body = request.app.state.services.mfa.status(principal.identity_provider_user_id)
    except IdentityAccessError as exc:
        return json_error_response(exc)
    return _ok(body)
