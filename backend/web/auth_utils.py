"""
Shared authentication utilities for the web adapter.

Why:
    Keep cookie policy and request-origin derivation in one place so the
    authorize, launch and callback routes agree on them.

Design:
    Cookie flags are pure functions of the environment string. The origin
    helper only trusts X-Forwarded-* when CARECORE_TRUST_PROXY=true.
"""

from __future__ import annotations

from fastapi import Request

from backend.web.config import trust_proxy


STATE_COOKIE_NAME = "carecore_smart_state"
STATE_COOKIE_MAX_AGE = 600


def cookie_opts(environment: str) -> dict:
    """Return hardened cookie flags (dev = prod).

    SameSite=Lax so the cookie is sent on the top-level redirect back from the
    identity provider; "Strict" would suppress it and break the callback.
    """
    return {"secure": True, "samesite": "lax", "httponly": True}


def no_store_headers() -> dict:
    return {"Cache-Control": "no-store", "Pragma": "no-cache"}


def request_protocol_and_host(request: Request) -> tuple[str, str]:
    """Derive the browser-facing (scheme, host[:port]) of the incoming request."""
    scheme = (request.url.scheme or "http").lower()
    if request.url.hostname:
        host = f"{request.url.hostname}:{request.url.port}" if request.url.port else request.url.hostname
    else:
        host = request.headers.get("host") or ""
    if trust_proxy():
        xf_proto = (request.headers.get("x-forwarded-proto") or scheme).split(",")[0].strip()
        xf_host = (request.headers.get("x-forwarded-host") or host).split(",")[0].strip()
        scheme = (xf_proto or scheme).lower()
        host = xf_host or host
    return scheme, host
