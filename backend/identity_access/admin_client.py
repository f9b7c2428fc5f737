"""
Keycloak Admin client for role, OAuth-client and TOTP credential management.

Design:
- Framework-agnostic, callable from the SMART authorizer, MFA manager and web adapters.
- Uses requests under the hood with a bounded timeout on every call.
- Caches one client-credentials admin token until shortly before it expires.
  Concurrent cold starts may each fetch a token; the grant is idempotent.

Failure policy:
- `authenticate()` fails closed and raises `AdminUnavailableError`.
- Directory operations log and degrade to negative defaults (False/None/[]),
  so an IdP outage turns into "no access" rather than a crash.

Security:
- Do not log credentials, tokens or TOTP codes.
- Expect the confidential admin client secret from environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import logging
import time

import requests

from .errors import AdminUnavailableError
from .oidc import OIDCConfig


logger = logging.getLogger("carecore.identity_access.admin")

TOKEN_REFRESH_MARGIN_SECONDS = 5
DEFAULT_TOKEN_LIFETIME_SECONDS = 60
OTP_CREDENTIAL_TYPE = "otp"


@dataclass
class AdminToken:
    value: str
    expires_at: float


@dataclass(frozen=True)
class OAuthClientDescriptor:
    id: str
    client_id: str
    redirect_uris: tuple[str, ...]
    standard_flow_enabled: bool
    name: Optional[str] = None
    public_client: bool = False


def redirect_uri_matches(registered: str, uri: str) -> bool:
    """Return True if `uri` is allowed by one registered redirect URI.

    Exact match, or suffix wildcard: a registered value ending in `/*` accepts
    any URI that starts with the part before `*` (including the trailing slash).
    """
    if not registered or not uri:
        return False
    if registered == uri:
        return True
    if registered.endswith("/*"):
        return uri.startswith(registered[:-1])
    return False


class AdminClient:
    def __init__(self, cfg: OIDCConfig, *, clock: Callable[[], float] = time.time) -> None:
        self.cfg = cfg
        self._clock = clock
        self._token: Optional[AdminToken] = None
        if not cfg.base_url:
            logger.warning("KC_BASE_URL is not configured; admin operations will fail")
        if not cfg.admin_client_id or not cfg.admin_client_secret:
            logger.warning("KC_ADMIN_CLIENT_ID/KC_ADMIN_CLIENT_SECRET not configured; admin operations will fail")

    # --- Authentication ---------------------------------------------------------

    def authenticate(self) -> str:
        """Return a valid admin bearer token, fetching a new one when needed.

        Raises
        ------
        AdminUnavailableError
            When the client-credentials grant cannot be completed. Nothing is
            cached in that case.
        """
        now = self._clock()
        if self._token is not None and now < self._token.expires_at:
            return self._token.value
        if not self.cfg.admin_client_secret:
            raise AdminUnavailableError("admin_client_secret_missing")
        data = {
            "grant_type": "client_credentials",
            "client_id": self.cfg.admin_client_id,
            "client_secret": self.cfg.admin_client_secret,
        }
        try:
            r = requests.post(
                self.cfg.admin_token_endpoint,
                data=data,
                timeout=self.cfg.http_timeout,
                verify=self.cfg.verify,
            )
            r.raise_for_status()
            body = r.json() or {}
        except Exception as exc:
            logger.error("Admin token request failed: %s", exc.__class__.__name__)
            raise AdminUnavailableError("admin_token_request_failed") from exc
        tok = body.get("access_token") if isinstance(body, dict) else None
        if not tok:
            logger.error("Admin token response missing access_token")
            raise AdminUnavailableError("admin_token_missing")
        expires_in = body.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
        self._token = AdminToken(
            value=str(tok),
            expires_at=now + max(0.0, float(expires_in) - TOKEN_REFRESH_MARGIN_SECONDS),
        )
        logger.debug("Authenticated with Keycloak admin API")
        return self._token.value

    def _hdr(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _send(self, method: str, path: str, *, params: dict | None = None, json: Any = None):
        token = self.authenticate()
        fn = getattr(requests, method)
        kwargs: Dict[str, Any] = {
            "headers": self._hdr(token),
            "timeout": self.cfg.http_timeout,
            "verify": self.cfg.verify,
        }
        if params is not None:
            kwargs["params"] = params
        if json is not None:
            kwargs["json"] = json
        return fn(f"{self.cfg.admin_base}{path}", **kwargs)

    def _get_json(self, path: str, *, params: dict | None = None) -> Any:
        r = self._send("get", path, params=params)
        if r.status_code == 404:
            return None
        r.raise_for_status()
        return r.json()

    # --- Users & roles ----------------------------------------------------------

    def find_user_by_id(self, user_id: str) -> Optional[dict]:
        try:
            user = self._get_json(f"/users/{user_id}")
        except Exception as exc:
            logger.error("Failed to find user in Keycloak: %s", exc.__class__.__name__)
            return None
        return user if isinstance(user, dict) and user else None

    def _realm_role_mappings(self, user_id: str) -> List[dict]:
        arr = self._get_json(f"/users/{user_id}/role-mappings/realm") or []
        return [role for role in arr if isinstance(role, dict)]

    def get_user_roles(self, user_id: str) -> List[str]:
        """Return the names of the user's realm roles."""
        try:
            mappings = self._realm_role_mappings(user_id)
        except Exception as exc:
            logger.error("Failed to get user roles from Keycloak: %s", exc.__class__.__name__)
            return []
        return [str(role["name"]) for role in mappings if role.get("name")]

    def _find_role(self, role_name: str) -> Optional[dict]:
        arr = self._get_json("/roles", params={"search": role_name}) or []
        for role in arr:
            if isinstance(role, dict) and role.get("name") == role_name and role.get("id"):
                return {"id": role["id"], "name": role["name"]}
        return None

    def add_role_to_user(self, user_id: str, role_name: str) -> bool:
        try:
            role = self._find_role(role_name)
            if role is None:
                logger.warning("Role not found in Keycloak: %s", role_name)
                return False
            r = self._send("post", f"/users/{user_id}/role-mappings/realm", json=[role])
            r.raise_for_status()
        except Exception as exc:
            logger.error("Failed to add role to user: %s", exc.__class__.__name__)
            return False
        logger.info("Role %s added to user %s", role_name, user_id)
        return True

    def remove_role_from_user(self, user_id: str, role_name: str) -> bool:
        try:
            role = self._find_role(role_name)
            if role is None:
                logger.warning("Role not found in Keycloak: %s", role_name)
                return False
            r = self._send("delete", f"/users/{user_id}/role-mappings/realm", json=[role])
            r.raise_for_status()
        except Exception as exc:
            logger.error("Failed to remove role from user: %s", exc.__class__.__name__)
            return False
        logger.info("Role %s removed from user %s", role_name, user_id)
        return True

    def update_user_roles(self, user_id: str, role_names: List[str]) -> bool:
        """Replace the user's realm roles with exactly `role_names`.

        Current mappings are removed first, then roles found by exact name in
        the full role catalog are added. Unknown names are ignored.
        """
        wanted = set(role_names)
        try:
            current = [
                {"id": role["id"], "name": role.get("name")}
                for role in self._realm_role_mappings(user_id)
                if role.get("id")
            ]
            if current:
                r = self._send("delete", f"/users/{user_id}/role-mappings/realm", json=current)
                r.raise_for_status()
            if wanted:
                catalog = self._get_json("/roles") or []
                to_add = [
                    {"id": role["id"], "name": role["name"]}
                    for role in catalog
                    if isinstance(role, dict) and role.get("id") and role.get("name") in wanted
                ]
                if to_add:
                    r = self._send("post", f"/users/{user_id}/role-mappings/realm", json=to_add)
                    r.raise_for_status()
        except Exception as exc:
            logger.error("Failed to update user roles: %s", exc.__class__.__name__)
            return False
        logger.info("Roles updated for user %s", user_id)
        return True

    def user_has_role(self, user_id: str, role_name: str) -> bool:
        return role_name in self.get_user_roles(user_id)

    # --- OAuth clients ------------------------------------------------------------

    def find_client_by_id(self, client_id: str) -> Optional[OAuthClientDescriptor]:
        """Look up an OAuth client by its public client_id.

        Always hits the IdP so administrative changes apply immediately.
        Returns None when the client is unknown at either lookup step.
        """
        try:
            hits = self._get_json("/clients", params={"clientId": client_id}) or []
            first = hits[0] if isinstance(hits, list) and hits else None
            internal_id = first.get("id") if isinstance(first, dict) else None
            if not internal_id:
                return None
            details = self._get_json(f"/clients/{internal_id}")
        except Exception as exc:
            logger.error("Failed to find client in Keycloak: %s", exc.__class__.__name__)
            return None
        if not isinstance(details, dict) or not details:
            return None
        uris = details.get("redirectUris")
        return OAuthClientDescriptor(
            id=str(internal_id),
            client_id=str(details.get("clientId") or client_id),
            redirect_uris=tuple(str(u) for u in uris if u) if isinstance(uris, list) else (),
            standard_flow_enabled=details.get("standardFlowEnabled") is True,
            name=details.get("name") or None,
            public_client=details.get("publicClient") is True,
        )

    def validate_redirect_uri(
        self,
        client_id: str,
        redirect_uri: str,
        *,
        client: Optional[OAuthClientDescriptor] = None,
    ) -> bool:
        """Check `redirect_uri` against the client's registered URIs.

        Pass `client` when the descriptor was fetched earlier in the same
        request; otherwise it is looked up live.
        """
        client = client or self.find_client_by_id(client_id)
        if client is None:
            return False
        return any(redirect_uri_matches(reg, redirect_uri) for reg in client.redirect_uris)

    def get_client_secret(
        self,
        client_id: str,
        *,
        client: Optional[OAuthClientDescriptor] = None,
    ) -> Optional[str]:
        """Return the confidential client's secret, or None for public clients."""
        client = client or self.find_client_by_id(client_id)
        if client is None or client.public_client:
            return None
        try:
            body = self._get_json(f"/clients/{client.id}/client-secret") or {}
        except Exception as exc:
            logger.error("Failed to read client secret: %s", exc.__class__.__name__)
            return None
        value = body.get("value") if isinstance(body, dict) else None
        return str(value) if value else None

    # --- TOTP credentials ------------------------------------------------------

    def _credentials(self, user_id: str) -> List[dict]:
        arr = self._get_json(f"/users/{user_id}/credentials") or []
        return [c for c in arr if isinstance(c, dict)]

    def user_has_mfa(self, user_id: str) -> bool:
        try:
            creds = self._credentials(user_id)
        except Exception as exc:
            logger.error("Failed to read user credentials: %s", exc.__class__.__name__)
            return False
        return any(c.get("type") == OTP_CREDENTIAL_TYPE for c in creds)

    def generate_totp_secret(self, user_id: str) -> Optional[Dict[str, str]]:
        """Ask the IdP to generate a TOTP secret for a user without one."""
        if self.user_has_mfa(user_id):
            logger.warning("TOTP already configured for user %s", user_id)
            return None
        try:
            r = self._send("post", f"/users/{user_id}/totp/generate")
            if r.status_code >= 400:
                logger.error("TOTP generate rejected with status %s", r.status_code)
                return None
            body = r.json() or {}
        except Exception as exc:
            logger.error("Failed to generate TOTP secret: %s", exc.__class__.__name__)
            return None
        secret = body.get("secret") if isinstance(body, dict) else None
        if not secret:
            return None
        return {"secret": str(secret)}

    def _verify_totp(self, user_id: str, code: str, *, enable: bool) -> bool:
        payload: Dict[str, Any] = {"code": code}
        if enable:
            payload["enable"] = True
        try:
            r = self._send("post", f"/users/{user_id}/totp/verify", json=payload)
            if r.status_code >= 400:
                logger.error("TOTP verify rejected with status %s", r.status_code)
                return False
            body = r.json() or {}
        except Exception as exc:
            logger.error("Failed to verify TOTP code: %s", exc.__class__.__name__)
            return False
        return isinstance(body, dict) and body.get("valid") is True

    def verify_and_enable_totp(self, user_id: str, code: str) -> bool:
        ok = self._verify_totp(user_id, code, enable=True)
        if ok:
            logger.info("TOTP enabled for user %s", user_id)
        return ok

    def verify_totp_code(self, user_id: str, code: str) -> bool:
        return self._verify_totp(user_id, code, enable=False)

    def remove_totp_credential(self, user_id: str) -> bool:
        try:
            otp = next((c for c in self._credentials(user_id) if c.get("type") == OTP_CREDENTIAL_TYPE), None)
            if otp is None or not otp.get("id"):
                logger.warning("No TOTP credential to remove for user %s", user_id)
                return False
            r = self._send("delete", f"/users/{user_id}/credentials/{otp['id']}")
            r.raise_for_status()
        except Exception as exc:
            logger.error("Failed to remove TOTP credential: %s", exc.__class__.__name__)
            return False
        logger.info("TOTP credential removed for user %s", user_id)
        return True
