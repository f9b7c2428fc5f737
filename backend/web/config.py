"""
Configuration and startup security checks for CareCore identity & access.

Why: A SMART authorization server must never start in production with a
placeholder admin secret or plaintext Keycloak endpoints. This module provides
a single guard that enforces minimal production safety constraints without
burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os


PLACEHOLDER_PREFIXES = ("CHANGE_ME", "DUMMY", "TEST_ONLY")


def is_prod_like(env: str | None) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def trust_proxy() -> bool:
    return (os.getenv("CARECORE_TRUST_PROXY", "false") or "").strip().lower() == "true"


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - KC_ADMIN_CLIENT_SECRET must be set and not a placeholder.
    - KC_BASE_URL and KC_PUBLIC_BASE_URL must use https.
    - FHIR_SERVER_URL, when set, must use https.
    """
    env = os.getenv("CARECORE_ENV", "dev")
    if not is_prod_like(env):
        return  # dev/test remain permissive

    kc_secret = (os.getenv("KC_ADMIN_CLIENT_SECRET", "") or "").strip()
    if not kc_secret or kc_secret.upper().startswith(PLACEHOLDER_PREFIXES):
        raise SystemExit(
            "Refusing to start: KC_ADMIN_CLIENT_SECRET is unset or a placeholder in production."
        )

    def _must_be_https(url_value: str, var_name: str) -> None:
        if not url_value:
            return
        val = url_value.strip().lower()
        if not val.startswith("https://"):
            raise SystemExit(f"Refusing to start: {var_name} must use https in production.")

    _must_be_https(os.getenv("KC_BASE_URL", ""), "KC_BASE_URL")
    _must_be_https(os.getenv("KC_PUBLIC_BASE_URL", ""), "KC_PUBLIC_BASE_URL")
    _must_be_https(os.getenv("FHIR_SERVER_URL", ""), "FHIR_SERVER_URL")
