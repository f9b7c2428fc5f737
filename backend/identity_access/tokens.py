"""
Access-token verification for the identity_access bounded context.

Why: Keep cryptographic validation of bearer tokens outside the web adapter so
we can unit test it independently. The result is a `Principal` carrying roles,
scopes and the SMART patient context that the access-decision engine reads.

Security: Validates the signature with the realm's JWKS (RS256 only) and checks
issuer and expiry. The JWKS cache is in memory; a shared deployment may back it
with Redis later.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import logging
import time

import requests
from jose import jwt
from jose.exceptions import JOSEError

from .domain import Principal, patient_id_from_reference
from .errors import ErrorKind, IdentityAccessError
from .oidc import OIDCConfig
from .smart import extract_patient_from_scope


logger = logging.getLogger("carecore.identity_access.tokens")

ALLOWED_ALGORITHMS = ["RS256"]
MAX_CLOCK_SKEW_SECONDS = 5  # Allow minimal skew between servers


class TokenVerificationError(IdentityAccessError):
    """Raised when a bearer token fails verification."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass
class _CacheEntry:
    jwks: Dict[str, object]
    expires_at: float


class JWKSCache:
    """Small in-memory cache for JWKS responses keyed by (base URL, realm)."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[Tuple[str, str], _CacheEntry] = {}

    def get(self, cfg: OIDCConfig) -> Dict[str, object]:
        key = (cfg.base_url, cfg.realm)
        now = time.time()
        entry = self._entries.get(key)
        if entry and entry.expires_at > now:
            return entry.jwks
        jwks = self._fetch(cfg)
        self._entries[key] = _CacheEntry(jwks=jwks, expires_at=now + self.ttl_seconds)
        return jwks

    def clear(self) -> None:
        self._entries.clear()

    def _fetch(self, cfg: OIDCConfig) -> Dict[str, object]:
        try:
            resp = requests.get(cfg.certs_endpoint, timeout=cfg.http_timeout, verify=cfg.verify)
        except requests.RequestException as exc:
            logger.warning("JWKS fetch failed: %s", exc.__class__.__name__)
            raise TokenVerificationError("jwks_fetch_failed") from exc
        if resp.status_code != 200:
            raise TokenVerificationError("jwks_fetch_failed")
        try:
            jwks = resp.json()
        except ValueError as exc:
            raise TokenVerificationError("jwks_invalid") from exc
        if not isinstance(jwks, dict) or "keys" not in jwks:
            raise TokenVerificationError("jwks_invalid")
        return jwks


JWKS_CACHE = JWKSCache()


def verify_access_token(
    access_token: str,
    cfg: OIDCConfig,
    *,
    cache: JWKSCache | None = None,
    audience: str | None = None,
) -> Dict[str, object]:
    """Validate a bearer access token using the realm JWKS and return claims.

    Raises
    ------
    TokenVerificationError:
        When the token is invalid (format, kid, signature, issuer, audience, expiry).
    """
    cache = cache or JWKS_CACHE
    try:
        header = jwt.get_unverified_header(access_token)
    except JOSEError as exc:
        raise TokenVerificationError("invalid_token_format") from exc
    kid = header.get("kid")
    if not kid:
        raise TokenVerificationError("missing_kid")
    if header.get("alg") not in ALLOWED_ALGORITHMS:
        raise TokenVerificationError("unsupported_alg")
    key_dict = _find_key(cache.get(cfg), kid)
    if not key_dict:
        raise TokenVerificationError("unknown_kid")

    try:
        claims = jwt.decode(
            access_token,
            key_dict,
            algorithms=ALLOWED_ALGORITHMS,
            audience=audience,
            issuer=cfg.issuer,
            options={
                "verify_signature": True,
                "verify_aud": audience is not None,
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "verify_at_hash": False,
            },
        )
    except JOSEError as exc:
        raise TokenVerificationError("invalid_token") from exc

    _validate_temporal_claims(claims)
    return claims


def principal_from_claims(claims: Dict[str, object]) -> Principal:
    """Map verified claims to a Principal.

    Patient context comes from the `patient` claim, else a `Patient/...`
    fhirUser, else a `patient/<id>.<access>` scope.
    """
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise TokenVerificationError("missing_sub")

    scope_raw = claims.get("scope") or claims.get("scp") or ""
    scope_str = scope_raw if isinstance(scope_raw, str) else ""
    scopes = frozenset(s for s in scope_str.split() if s)

    realm_access = claims.get("realm_access")
    roles_raw = realm_access.get("roles") if isinstance(realm_access, dict) else None
    roles = frozenset(str(r) for r in roles_raw if r) if isinstance(roles_raw, list) else frozenset()

    fhir_user = claims.get("fhirUser")
    fhir_user_context = str(fhir_user) if isinstance(fhir_user, str) and fhir_user else None

    patient: Optional[str] = None
    if isinstance(claims.get("patient"), str):
        patient = patient_id_from_reference(claims["patient"])
    elif fhir_user_context and fhir_user_context.startswith("Patient/"):
        patient = patient_id_from_reference(fhir_user_context)
    else:
        patient = extract_patient_from_scope(scope_str)

    return Principal(
        id=sub,
        identity_provider_user_id=sub,
        roles=roles,
        patient_context=patient,
        fhir_user_context=fhir_user_context,
        scopes=scopes,
    )


def _find_key(jwks: Dict[str, object], kid: str) -> Dict[str, object] | None:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        return None
    for key in keys:
        if isinstance(key, dict) and key.get("kid") == kid:
            return key
    return None


def _validate_temporal_claims(claims: Dict[str, object]) -> None:
    now = time.time()
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise TokenVerificationError("invalid_token")
    if exp + MAX_CLOCK_SKEW_SECONDS < now:
        raise TokenVerificationError("token_expired")

    iat = claims.get("iat")
    if isinstance(iat, (int, float)) and iat - MAX_CLOCK_SKEW_SECONDS > now:
        raise TokenVerificationError("invalid_token")

    nbf = claims.get("nbf")
    if isinstance(nbf, (int, float)) and nbf - MAX_CLOCK_SKEW_SECONDS > now:
        raise TokenVerificationError("invalid_token")
