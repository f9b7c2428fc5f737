"""
Keycloak (OIDC) configuration for the SMART-on-FHIR authorization layer.

Why: Keep framework-independent settings in one immutable object so the admin
client, the SMART authorizer and token verification agree on endpoints. The web
adapter builds it once via `OIDCConfig.from_env()`; tests construct it directly.

Security: Secrets are held in memory only and never rendered in `repr`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional
import os


DEFAULT_REALM = "carecore"
DEFAULT_API_PREFIX = "/api"


def _env(name: str, default: str | None = None) -> str | None:
    val = os.getenv(name)
    if val is None:
        return default
    val = val.strip()
    return val or default


@dataclass(frozen=True)
class OIDCConfig:
    base_url: str  # internal base URL (server-to-server), e.g., http://keycloak:8080
    realm: str = DEFAULT_REALM
    public_base_url: Optional[str] = None  # browser-facing URL, e.g., https://id.example.com
    admin_realm: Optional[str] = None  # realm of the admin client; defaults to `realm`
    admin_client_id: str = "carecore-admin-cli"
    admin_client_secret: Optional[str] = field(default=None, repr=False)
    ca_bundle: Optional[str] = None
    http_timeout: float = 10.0
    api_prefix: str = DEFAULT_API_PREFIX
    fhir_server_url: Optional[str] = None
    environment: str = "dev"

    @classmethod
    def from_env(cls) -> "OIDCConfig":
        timeout_raw = _env("KC_HTTP_TIMEOUT", "10") or "10"
        try:
            timeout = float(timeout_raw)
        except ValueError:
            timeout = 10.0
        return cls(
            base_url=(_env("KC_BASE_URL", "http://localhost:8080") or "").rstrip("/"),
            realm=_env("KC_REALM", DEFAULT_REALM) or DEFAULT_REALM,
            public_base_url=(_env("KC_PUBLIC_BASE_URL") or "").rstrip("/") or None,
            admin_realm=_env("KC_ADMIN_REALM"),
            admin_client_id=_env("KC_ADMIN_CLIENT_ID", "carecore-admin-cli") or "carecore-admin-cli",
            admin_client_secret=_env("KC_ADMIN_CLIENT_SECRET"),
            ca_bundle=_env("KEYCLOAK_CA_BUNDLE"),
            http_timeout=max(1.0, timeout),
            api_prefix=_env("API_PREFIX", DEFAULT_API_PREFIX) or DEFAULT_API_PREFIX,
            fhir_server_url=_env("FHIR_SERVER_URL"),
            environment=(_env("CARECORE_ENV", "dev") or "dev").lower(),
        )

    @property
    def auth_endpoint(self) -> str:
        base = self.public_base_url or self.base_url
        return f"{base}/realms/{self.realm}/protocol/openid-connect/auth"

    @property
    def token_endpoint(self) -> str:
        # Token exchange happens server-side; use internal base URL
        return f"{self.base_url}/realms/{self.realm}/protocol/openid-connect/token"

    @property
    def admin_token_endpoint(self) -> str:
        return f"{self.base_url}/realms/{self.admin_realm or self.realm}/protocol/openid-connect/token"

    @property
    def admin_base(self) -> str:
        return f"{self.base_url}/admin/realms/{self.realm}"

    @property
    def issuer(self) -> str:
        base = self.public_base_url or self.base_url
        return f"{base}/realms/{self.realm}"

    @property
    def certs_endpoint(self) -> str:
        return f"{self.base_url}/realms/{self.realm}/protocol/openid-connect/certs"

    @property
    def verify(self) -> str | bool:
        # Honor CA bundle in production environments; default to system CAs
        return self.ca_bundle if self.ca_bundle else True
