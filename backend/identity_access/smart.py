"""
SMART-on-FHIR authorization: Authorization Code flow and EHR launch.

Why: Third-party SMART apps talk to us, not to Keycloak. We validate their
parameters against the client registry, send the browser to Keycloak with
*our* callback as redirect_uri, and carry the app's own state and redirect URI
inside an encoded `state` parameter. On callback we check the CSRF state,
exchange the code server-side and attach the patient context.

Flow states:
    INITIATED -> CALLBACK_RECEIVED -> STATE_VALIDATED -> TOKENS_EXCHANGED -> ESTABLISHED
    LAUNCH_RECEIVED -> LAUNCH_VALIDATED -> LAUNCH_TOKEN_DECODED -> CONTEXT_STORED
Any failure ends in ERROR with the raised error attached to the result.

Security:
- The CSRF state token is never stored server-side; the caller keeps it in a
  short-lived cookie and hands it back for comparison.
- Launch tokens are decoded, not verified (see DESIGN.md).
- Authorization codes are single-use; the exchange is never retried.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode
import base64
import hmac
import json
import logging
import re
import secrets
import time

# Small indirection to ease monkeypatching in tests
import requests as http

from .admin_client import AdminClient, OAuthClientDescriptor
from .errors import (
    ConfigurationError,
    ErrorKind,
    IdentityAccessError,
    OAuth2Error,
    ParameterValidationError,
    StateValidationError,
    ValidationIssue,
)
from .oidc import OIDCConfig
from .stores import LaunchContext, LaunchContextStore


logger = logging.getLogger("carecore.identity_access.smart")

STATE_TOKEN_BYTES = 32
DEFAULT_TOKEN_TYPE = "Bearer"
DEFAULT_EXPIRES_IN = 3600
GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = frozenset({GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN})

# Letters, digits, colons and whitespace, plus the '/', '.' and '*' that
# SMART v1 scopes such as `patient/123.read` and `patient/*.read` need.
SCOPE_PATTERN = re.compile(r"^[A-Za-z0-9:\s/.*]+$")
PATIENT_SCOPE_PATTERN = re.compile(r"(?:^|\s)patient/([A-Za-z0-9\-]+)\.([A-Za-z*]+)(?=\s|$)")


def http_post(url: str, data: Dict[str, str], headers: Dict[str, str], *, timeout: float, verify):
    return http.post(url, data=data, headers=headers, timeout=timeout, verify=verify)


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    """Strict base64url decode; accepts missing padding, rejects foreign characters."""
    stripped = text.strip().rstrip("=")
    padded = stripped + "=" * (-len(stripped) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def extract_patient_from_scope(scope: Optional[str]) -> Optional[str]:
    """Return `<id>` from the first `patient/<id>.<access>` scope, if any."""
    if not scope:
        return None
    m = PATIENT_SCOPE_PATTERN.search(scope)
    return m.group(1) if m else None


class FlowState(str, Enum):
    INITIATED = "initiated"
    CALLBACK_RECEIVED = "callback_received"
    STATE_VALIDATED = "state_validated"
    TOKENS_EXCHANGED = "tokens_exchanged"
    ESTABLISHED = "established"
    LAUNCH_RECEIVED = "launch_received"
    LAUNCH_VALIDATED = "launch_validated"
    LAUNCH_TOKEN_DECODED = "launch_token_decoded"
    CONTEXT_STORED = "context_stored"
    ERROR = "error"


@dataclass
class AuthorizeParams:
    client_id: str
    response_type: str
    redirect_uri: str
    scope: str
    state: Optional[str] = None
    aud: Optional[str] = None


@dataclass
class LaunchParams:
    iss: str
    launch: str
    client_id: str
    redirect_uri: str
    scope: str
    state: Optional[str] = None


@dataclass
class TokenParams:
    grant_type: str
    client_id: str
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class OAuthState:
    """Payload of the `state` parameter we send to the IdP."""

    state: str
    client_redirect_uri: str
    launch_token: Optional[str] = None
    client_id: Optional[str] = None

    def encode(self) -> str:
        payload: Dict[str, str] = {"state": self.state, "clientRedirectUri": self.client_redirect_uri}
        if self.launch_token:
            payload["launchToken"] = self.launch_token
        if self.client_id:
            payload["clientId"] = self.client_id
        return b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


@dataclass
class TokenResponse:
    access_token: str
    token_type: str = DEFAULT_TOKEN_TYPE
    expires_in: int = DEFAULT_EXPIRES_IN
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None
    patient: Optional[str] = None
    encounter: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        for key in ("refresh_token", "scope", "id_token", "patient", "encounter"):
            val = getattr(self, key)
            if val is not None:
                out[key] = val
        return out


@dataclass
class FlowResult:
    state: FlowState
    authorization_url: Optional[str] = None
    csrf_state: Optional[str] = None
    tokens: Optional[TokenResponse] = None
    launch_context: Optional[LaunchContext] = None
    error: Optional[IdentityAccessError] = None
    history: List[FlowState] = field(default_factory=list)

    def advance(self, state: FlowState) -> None:
        self.history.append(self.state)
        self.state = state

    def fail(self, error: IdentityAccessError) -> "FlowResult":
        self.error = error
        self.advance(FlowState.ERROR)
        return self

    @property
    def ok(self) -> bool:
        return self.state is not FlowState.ERROR


class SmartAuthorizer:
    def __init__(
        self,
        cfg: OIDCConfig,
        admin: AdminClient,
        launch_store: LaunchContextStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self.admin = admin
        self.launch_store = launch_store
        self._clock = clock

    # --- State tokens -----------------------------------------------------------

    @staticmethod
    def generate_state_token() -> str:
        """Return 32 cryptographically random bytes as base64url text."""
        return b64url_encode(secrets.token_bytes(STATE_TOKEN_BYTES))

    @staticmethod
    def decode_state_token(encoded: Optional[str]) -> Optional[OAuthState]:
        """Decode our `state` parameter; None for anything malformed. Never raises."""
        if not encoded or not isinstance(encoded, str):
            return None
        try:
            data = json.loads(b64url_decode(encoded).decode("utf-8"))
        except (ValueError, TypeError, RecursionError):
            return None
        if not isinstance(data, dict):
            return None
        state = data.get("state")
        redirect = data.get("clientRedirectUri")
        if not isinstance(state, str) or not isinstance(redirect, str) or not redirect:
            return None
        launch_token = data.get("launchToken")
        client_id = data.get("clientId")
        return OAuthState(
            state=state,
            client_redirect_uri=redirect,
            launch_token=launch_token if isinstance(launch_token, str) and launch_token else None,
            client_id=client_id if isinstance(client_id, str) and client_id else None,
        )

    @staticmethod
    def validate_state_token(received: Optional[str], stored: Optional[str]) -> None:
        """Compare the returned CSRF state with the one the caller kept.

        Raises StateValidationError (Unauthorized) when either side is blank or
        the trimmed values differ.
        """
        r = (received or "").strip()
        s = (stored or "").strip()
        if not r or not s:
            raise StateValidationError("state token missing")
        if not hmac.compare_digest(r.encode("utf-8"), s.encode("utf-8")):
            raise StateValidationError("state mismatch - possible CSRF")

    # --- URLs ---------------------------------------------------------------------

    def get_callback_url(self, *, protocol: Optional[str] = None, host: Optional[str] = None) -> str:
        proto = (protocol or "").strip() or "http"
        hostport = (host or "").strip() or "localhost:3000"
        prefix = (self.cfg.api_prefix or "").strip() or "/api"
        return f"{proto}://{hostport}{prefix}/fhir/token"

    def _authorization_url(
        self,
        *,
        client_id: str,
        scope: str,
        encoded_state: str,
        callback_url: str,
        aud: Optional[str] = None,
    ) -> str:
        if not self.cfg.base_url:
            logger.error("KC_BASE_URL is not configured")
            raise ConfigurationError("authorization server is not configured")
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": callback_url,
            "scope": scope,
            "state": encoded_state,
        }
        if aud:
            params["aud"] = aud
        return f"{self.cfg.auth_endpoint}?{urlencode(params)}"

    # --- Parameter validation -------------------------------------------------

    @staticmethod
    def _scope_issues(scope: Optional[str]) -> List[ValidationIssue]:
        if not scope or not scope.strip():
            return [ValidationIssue("scope", "Scope parameter is required and cannot be empty.")]
        if not SCOPE_PATTERN.match(scope):
            return [
                ValidationIssue(
                    "scope",
                    "Invalid scope format. Scopes must contain only letters, numbers, colons, "
                    "slashes, dots, asterisks and spaces.",
                )
            ]
        return []

    def _require_client(self, client_id: str, *, check_standard_flow: bool) -> OAuthClientDescriptor:
        client = self.admin.find_client_by_id(client_id) if client_id else None
        if client is None:
            raise ParameterValidationError.single(
                "client_id",
                f'Client "{client_id}" not found or not configured.',
                diagnostics="The client_id provided does not exist in the authorization server.",
                kind=ErrorKind.UNAUTHORIZED,
            )
        if check_standard_flow and not client.standard_flow_enabled:
            raise ParameterValidationError.single(
                "client_id",
                f'Client "{client_id}" does not have Authorization Code flow enabled.',
                diagnostics="The client must have Standard Flow enabled to use this authorization endpoint.",
            )
        return client

    def _require_redirect_uri(self, client: OAuthClientDescriptor, redirect_uri: str) -> None:
        client_id = client.client_id
        if not self.admin.validate_redirect_uri(client_id, redirect_uri, client=client):
            raise ParameterValidationError.single(
                "redirect_uri",
                f'Redirect URI "{redirect_uri}" is not registered for client "{client_id}".',
                diagnostics="The redirect_uri must be one of the valid redirect URIs configured for the client.",
            )

    def validate_auth_params(self, params: AuthorizeParams) -> None:
        issues: List[ValidationIssue] = []
        if params.response_type != "code":
            issues.append(
                ValidationIssue(
                    "response_type",
                    'Invalid response_type. Only "code" is supported for Authorization Code flow.',
                )
            )
        if not params.redirect_uri:
            issues.append(ValidationIssue("redirect_uri", "redirect_uri is required."))
        issues.extend(self._scope_issues(params.scope))
        if issues:
            raise ParameterValidationError(issues)
        client = self._require_client(params.client_id, check_standard_flow=True)
        self._require_redirect_uri(client, params.redirect_uri)

    def build_authorization_url(self, params: AuthorizeParams, state_token: str, callback_url: str) -> str:
        """Validate `params` and return the IdP authorization URL.

        The IdP redirects to `callback_url`; the app's own state (or
        `state_token` when it sent none) and redirect URI ride inside `state`.
        """
        self.validate_auth_params(params)
        encoded = OAuthState(
            state=params.state or state_token,
            client_redirect_uri=params.redirect_uri,
            client_id=params.client_id,
        ).encode()
        url = self._authorization_url(
            client_id=params.client_id,
            scope=params.scope,
            encoded_state=encoded,
            callback_url=callback_url,
            aud=params.aud,
        )
        logger.debug("Built authorization URL for client %s", params.client_id)
        return url

    # --- Token exchange ---------------------------------------------------------

    def validate_token_params(self, params: TokenParams) -> OAuthClientDescriptor:
        """Check a token request; return the client descriptor for the exchange."""
        if not params.grant_type:
            raise OAuth2Error("invalid_request", "Missing required parameter: grant_type")
        if params.grant_type not in SUPPORTED_GRANT_TYPES:
            raise OAuth2Error(
                "unsupported_grant_type",
                'grant_type must be "authorization_code" or "refresh_token"',
            )
        if not params.client_id:
            raise OAuth2Error("invalid_request", "Missing required parameter: client_id")
        if params.grant_type == GRANT_AUTHORIZATION_CODE:
            if not params.code:
                raise OAuth2Error("invalid_request", "Missing required parameter: code")
            if not params.redirect_uri:
                raise OAuth2Error("invalid_request", "Missing required parameter: redirect_uri")
        elif not params.refresh_token:
            raise OAuth2Error("invalid_request", "Missing required parameter: refresh_token")
        client = self.admin.find_client_by_id(params.client_id)
        if client is None:
            raise OAuth2Error("invalid_client", f'Client "{params.client_id}" not found')
        if params.grant_type == GRANT_AUTHORIZATION_CODE and not self.admin.validate_redirect_uri(
            params.client_id, params.redirect_uri or "", client=client
        ):
            raise OAuth2Error("invalid_grant", "redirect_uri is not registered for this client")
        return client

    def exchange_code_for_tokens(
        self,
        params: TokenParams,
        callback_url: str,
        *,
        client: Optional[OAuthClientDescriptor] = None,
    ) -> TokenResponse:
        """Exchange an authorization code or refresh token at the IdP token endpoint.

        `client` is the descriptor returned by `validate_token_params`, if any.
        Raises OAuth2Error on rejection (Unauthorized) or transport failure.
        """
        data: Dict[str, str] = {"grant_type": params.grant_type, "client_id": params.client_id}
        secret = params.client_secret or self.admin.get_client_secret(params.client_id, client=client)
        if secret:
            data["client_secret"] = secret
        if params.grant_type == GRANT_AUTHORIZATION_CODE:
            data["code"] = params.code or ""
            # Must equal the redirect_uri we sent to the IdP, i.e. our callback
            data["redirect_uri"] = callback_url
        else:
            data["refresh_token"] = params.refresh_token or ""
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        try:
            resp = http_post(
                self.cfg.token_endpoint,
                data=data,
                headers=headers,
                timeout=self.cfg.http_timeout,
                verify=self.cfg.verify,
            )
        except Exception as exc:
            logger.warning("Token exchange failed: %s", exc.__class__.__name__)
            raise OAuth2Error("server_error", "Authorization server unavailable") from exc
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}
        if not (200 <= resp.status_code < 300) or not body.get("access_token"):
            error = body.get("error") if isinstance(body.get("error"), str) else "invalid_grant"
            desc = body.get("error_description") if isinstance(body.get("error_description"), str) else None
            logger.warning("Token exchange rejected: status=%s error=%s", resp.status_code, error)
            raise OAuth2Error(error, desc or "Token exchange failed", kind=ErrorKind.UNAUTHORIZED)

        expires_in = body.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            expires_in = DEFAULT_EXPIRES_IN
        scope = body.get("scope") if isinstance(body.get("scope"), str) else None
        patient = extract_patient_from_scope(scope)
        if patient is None and isinstance(body.get("patient"), str):
            patient = body["patient"]
        return TokenResponse(
            access_token=str(body["access_token"]),
            token_type=body.get("token_type") or DEFAULT_TOKEN_TYPE,
            expires_in=int(expires_in),
            refresh_token=body.get("refresh_token") or None,
            scope=scope,
            id_token=body.get("id_token") or None,
            patient=patient,
        )

    def handle_token_request(self, params: TokenParams, callback_url: str) -> TokenResponse:
        """Token endpoint for apps posting code or refresh_token directly."""
        client = self.validate_token_params(params)
        return self.exchange_code_for_tokens(params, callback_url, client=client)

    # --- EHR launch ---------------------------------------------------------------

    def validate_launch_params(self, params: LaunchParams) -> None:
        issues: List[ValidationIssue] = []
        fhir_url = (self.cfg.fhir_server_url or "").rstrip("/")
        if fhir_url and (params.iss or "").rstrip("/") != fhir_url:
            issues.append(ValidationIssue("iss", "iss does not match this FHIR server."))
        if not params.launch or not params.launch.strip():
            issues.append(ValidationIssue("launch", "launch parameter is required."))
        if not params.redirect_uri:
            issues.append(ValidationIssue("redirect_uri", "redirect_uri is required."))
        issues.extend(self._scope_issues(params.scope))
        if issues:
            raise ParameterValidationError(issues)
        client = self._require_client(params.client_id, check_standard_flow=False)
        self._require_redirect_uri(client, params.redirect_uri)

    def validate_and_decode_launch_token(self, launch: str) -> LaunchContext:
        """Decode a base64url JSON launch token into a freshly stamped LaunchContext."""
        try:
            data = json.loads(b64url_decode(launch).decode("utf-8"))
        except (ValueError, TypeError, RecursionError) as exc:
            raise ParameterValidationError.single("launch", "Invalid launch token.") from exc
        if not isinstance(data, dict):
            raise ParameterValidationError.single("launch", "Invalid launch token.")

        def _str(*keys: str) -> Optional[str]:
            for key in keys:
                val = data.get(key)
                if isinstance(val, str) and val:
                    return val
            return None

        def _bool(*keys: str) -> Optional[bool]:
            for key in keys:
                val = data.get(key)
                if isinstance(val, bool):
                    return val
            return None

        return LaunchContext(
            patient=_str("patient"),
            encounter=_str("encounter"),
            practitioner=_str("practitioner"),
            need_patient_banner=_bool("need_patient_banner", "needPatientBanner"),
            need_smart_style_response=_bool("need_smart_style_response", "needSmartStyleResponse"),
            created_at=self._clock(),
        )

    def store_launch_context(self, launch_token: str, context: LaunchContext) -> None:
        self.launch_store.store(launch_token, context)

    def get_launch_context(self, launch_token: str) -> Optional[LaunchContext]:
        return self.launch_store.get(launch_token)

    def remove_launch_context(self, launch_token: str) -> None:
        self.launch_store.remove(launch_token)

    # --- Orchestration ------------------------------------------------------------

    def start_authorization(self, params: AuthorizeParams, callback_url: str) -> FlowResult:
        result = FlowResult(state=FlowState.INITIATED)
        csrf = params.state or self.generate_state_token()
        try:
            result.authorization_url = self.build_authorization_url(params, csrf, callback_url)
        except IdentityAccessError as exc:
            return result.fail(exc)
        result.csrf_state = csrf
        return result

    def start_launch(self, params: LaunchParams, callback_url: str) -> FlowResult:
        result = FlowResult(state=FlowState.LAUNCH_RECEIVED)
        try:
            self.validate_launch_params(params)
            result.advance(FlowState.LAUNCH_VALIDATED)
            context = self.validate_and_decode_launch_token(params.launch)
            result.launch_context = context
            result.advance(FlowState.LAUNCH_TOKEN_DECODED)
            self.store_launch_context(params.launch, context)
            result.advance(FlowState.CONTEXT_STORED)
            csrf = params.state or self.generate_state_token()
            encoded = OAuthState(
                state=csrf,
                client_redirect_uri=params.redirect_uri,
                launch_token=params.launch,
                client_id=params.client_id,
            ).encode()
            result.authorization_url = self._authorization_url(
                client_id=params.client_id,
                scope=params.scope,
                encoded_state=encoded,
                callback_url=callback_url,
                aud=params.iss,
            )
        except IdentityAccessError as exc:
            return result.fail(exc)
        result.csrf_state = csrf
        logger.info("EHR launch accepted for client %s", params.client_id)
        return result

    def complete_callback(
        self,
        *,
        code: Optional[str],
        encoded_state: Optional[str],
        stored_state: Optional[str],
        callback_url: str,
    ) -> FlowResult:
        """Handle the IdP redirect: check CSRF state, exchange code, attach context."""
        result = FlowResult(state=FlowState.CALLBACK_RECEIVED)
        try:
            decoded = self.decode_state_token(encoded_state)
            if decoded is None:
                raise StateValidationError("state token invalid")
            self.validate_state_token(decoded.state, stored_state)
            result.advance(FlowState.STATE_VALIDATED)

            context: Optional[LaunchContext] = None
            if decoded.launch_token:
                context = self.get_launch_context(decoded.launch_token)
                if context is not None:
                    # One-time use
                    self.remove_launch_context(decoded.launch_token)
            result.launch_context = context

            if not decoded.client_id:
                raise OAuth2Error("invalid_request", "Missing required parameter: client_id")
            params = TokenParams(
                grant_type=GRANT_AUTHORIZATION_CODE,
                client_id=decoded.client_id,
                code=code,
                redirect_uri=decoded.client_redirect_uri,
            )
            client = self.validate_token_params(params)
            tokens = self.exchange_code_for_tokens(params, callback_url, client=client)
            result.advance(FlowState.TOKENS_EXCHANGED)
            if context is not None:
                # Launch context takes precedence over the scope-derived patient
                if context.patient:
                    tokens.patient = context.patient
                if context.encounter:
                    tokens.encounter = context.encounter
            result.tokens = tokens
            result.advance(FlowState.ESTABLISHED)
        except IdentityAccessError as exc:
            logger.warning("SMART callback failed: %s", exc.__class__.__name__)
            return result.fail(exc)
        return result
