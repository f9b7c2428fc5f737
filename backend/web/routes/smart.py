"""
SMART-on-FHIR FastAPI routes (router-only module).

Why:
    Keep the HTTP surface thin: parse parameters, call `SmartAuthorizer`, and
    render results. All protocol decisions live in
    `backend.identity_access.smart`.

Notes:
    - Query parameters default to empty strings so missing values surface as
      OperationOutcome issues rather than framework 422s.
    - The CSRF state token travels in an HttpOnly cookie scoped to the FHIR
      path; the callback compares it with the state returned by the IdP.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from backend.identity_access.smart import (
    AuthorizeParams,
    FlowResult,
    LaunchParams,
    TokenParams,
)
from backend.identity_access.errors import IdentityAccessError, OAuth2Error
from backend.web.auth_utils import (
    STATE_COOKIE_MAX_AGE,
    STATE_COOKIE_NAME,
    cookie_opts,
    no_store_headers,
    request_protocol_and_host,
)
from backend.web.errors import oauth_error_response, operation_outcome_response


smart_router = APIRouter(tags=["SMART on FHIR"])
logger = logging.getLogger("carecore.web.smart")


def _services(request: Request):
    return request.app.state.services


def _callback_url(request: Request) -> str:
    proto, host = request_protocol_and_host(request)
    return _services(request).smart.get_callback_url(protocol=proto, host=host)


def _cookie_path(request: Request) -> str:
    return f"{_services(request).cfg.api_prefix}/fhir"


def _redirect_with_state_cookie(request: Request, result: FlowResult) -> RedirectResponse:
    resp = RedirectResponse(url=result.authorization_url or "", status_code=302, headers=no_store_headers())
    opts = cookie_opts(_services(request).cfg.environment)
    resp.set_cookie(
        STATE_COOKIE_NAME,
        result.csrf_state or "",
        max_age=STATE_COOKIE_MAX_AGE,
        path=_cookie_path(request),
        **opts,
    )
    return resp


@smart_router.get("/fhir/auth")
async def fhir_authorize(
    request: Request,
    client_id: str = "",
    response_type: str = "",
    redirect_uri: str = "",
    scope: str = "",
    state: str | None = None,
    aud: str | None = None,
):
    """
    SMART authorization endpoint (Authorization Code flow).

    Behavior:
        - Validates client, response_type, redirect_uri and scope.
        - Redirects (302) to the Keycloak authorization endpoint with our
          callback as redirect_uri and the app's state/redirect in `state`.
        - Errors render as FHIR OperationOutcome (400/401/503).
    Permissions:
        Public.
    """
    params = AuthorizeParams(
        client_id=client_id,
        response_type=response_type,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state or None,
        aud=aud or None,
    )
    result = _services(request).smart.start_authorization(params, _callback_url(request))
    if result.error is not None:
        return operation_outcome_response(result.error)
    return _redirect_with_state_cookie(request, result)


@smart_router.get("/fhir/authorize")
async def fhir_launch(
    request: Request,
    iss: str = "",
    launch: str = "",
    client_id: str = "",
    redirect_uri: str = "",
    scope: str = "",
    state: str | None = None,
):
    """
    SMART EHR launch endpoint.

    Behavior:
        - Validates iss against FHIR_SERVER_URL (when configured), the launch
          token, client, redirect_uri and scope.
        - Stores the decoded launch context (10 minutes) and redirects to
          Keycloak; the launch token rides in `state` for the callback.
    Permissions:
        Public.
    """
    params = LaunchParams(
        iss=iss,
        launch=launch,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state or None,
    )
    result = _services(request).smart.start_launch(params, _callback_url(request))
    if result.error is not None:
        return operation_outcome_response(result.error)
    return _redirect_with_state_cookie(request, result)


@smart_router.get("/fhir/token")
async def fhir_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
):
    """
    Callback from Keycloak: validate CSRF state, exchange the code, return tokens.

    Behavior:
        - IdP errors are passed through in OAuth2 shape (400).
        - The state cookie is cleared on every outcome.
    Permissions:
        Public; requires the state cookie set by /fhir/auth or /fhir/authorize.
    """
    if error:
        resp = oauth_error_response(OAuth2Error(error, error_description or "authorization failed"))
    else:
        result = _services(request).smart.complete_callback(
            code=code,
            encoded_state=state,
            stored_state=request.cookies.get(STATE_COOKIE_NAME),
            callback_url=_callback_url(request),
        )
        if result.error is not None:
            resp = oauth_error_response(result.error)
        else:
            resp = JSONResponse(result.tokens.to_dict(), headers=no_store_headers())
    resp.delete_cookie(STATE_COOKIE_NAME, path=_cookie_path(request))
    return resp


@smart_router.post("/fhir/token")
async def fhir_token(request: Request):
    """
    OAuth2 token endpoint for SMART apps (form-encoded body).

    Supports `authorization_code` and `refresh_token` grants. Errors render
    as `{error, error_description}` with 400/401.
    """
    form = await request.form()

    def _field(name: str) -> str | None:
        val = form.get(name)
        return str(val).strip() if isinstance(val, str) and val.strip() else None

    params = TokenParams(
        grant_type=_field("grant_type") or "",
        client_id=_field("client_id") or "",
        code=_field("code"),
        redirect_uri=_field("redirect_uri"),
        client_secret=_field("client_secret"),
        refresh_token=_field("refresh_token"),
    )
    try:
        tokens = _services(request).smart.handle_token_request(params, _callback_url(request))
    except IdentityAccessError as exc:
        logger.info("Token request rejected: %s", exc.__class__.__name__)
        return oauth_error_response(exc)
    return JSONResponse(tokens.to_dict(), headers=no_store_headers())
