"""
TOTP multi-factor credentials on top of the Keycloak admin client.

Setup returns an `otpauth://` provisioning URI; rendering a QR code is left to
the client. Administrators and practitioners must have MFA; for everyone else
it is optional.
"""
from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import quote
import logging
import re

from .admin_client import AdminClient
from .domain import MFA_REQUIRED_ROLES, Principal
from .errors import AdminUnavailableError, ForbiddenError, NotFoundError, IdentityAccessError
from .oidc import DEFAULT_REALM


logger = logging.getLogger("carecore.identity_access.mfa")

_TOTP_CODE = re.compile(r"^\d{6}$")

MSG_REQUIRED_NOT_ENABLED = "MFA is required for your role. Please configure MFA to access protected endpoints."
MSG_ENABLED = "MFA is enabled and active"
MSG_OPTIONAL = "MFA is optional for your role"


def _require_code_format(code: Optional[str]) -> str:
    value = (code or "").strip()
    if not _TOTP_CODE.match(value):
        raise IdentityAccessError("TOTP code must be exactly 6 digits")
    return value


class MFAManager:
    def __init__(self, admin: AdminClient, *, realm: Optional[str] = None) -> None:
        self.admin = admin
        self.realm = realm or DEFAULT_REALM

    @property
    def issuer(self) -> str:
        return f"CareCore ({self.realm})"

    def provisioning_uri(self, label: str, secret: str) -> str:
        issuer = quote(self.issuer, safe="")
        return f"otpauth://totp/{issuer}:{quote(label, safe='')}?secret={secret}&issuer={issuer}"

    def setup(self, user_id: str, label: str) -> Dict[str, str]:
        logger.info("Setting up MFA for user %s", user_id)
        if self.admin.user_has_mfa(user_id):
            raise IdentityAccessError("MFA is already configured for this user")
        generated = self.admin.generate_totp_secret(user_id)
        secret = (generated or {}).get("secret")
        if not secret:
            raise AdminUnavailableError("Failed to generate TOTP secret")
        return {
            "secret": secret,
            "provisioning_uri": self.provisioning_uri(label, secret),
            "manual_entry_key": secret,
            "message": "Scan the QR code with your authenticator app",
        }

    def verify_and_enable(self, user_id: str, code: str) -> Dict[str, object]:
        value = _require_code_format(code)
        if self.admin.user_has_mfa(user_id):
            raise IdentityAccessError("MFA is already enabled for this user")
        if not self.admin.verify_and_enable_totp(user_id, value):
            raise IdentityAccessError("Invalid TOTP code. Please try again.")
        logger.info("MFA verified and enabled for user %s", user_id)
        return {"success": True, "message": "MFA enabled successfully", "mfa_enabled": True}

    def disable(self, user_id: str, code: str) -> Dict[str, object]:
        value = _require_code_format(code)
        if not self.admin.user_has_mfa(user_id):
            raise IdentityAccessError("MFA is not enabled for this user")
        if not self.admin.verify_totp_code(user_id, value):
            raise IdentityAccessError("Invalid TOTP code. Please provide a valid code to disable MFA.")
        if not self.admin.remove_totp_credential(user_id):
            raise IdentityAccessError("Failed to disable MFA. Please try again.")
        logger.info("MFA disabled for user %s", user_id)
        return {"success": True, "message": "MFA disabled successfully", "mfa_enabled": False}

    def status(self, user_id: str) -> Dict[str, object]:
        if self.admin.find_user_by_id(user_id) is None:
            raise NotFoundError(f"User with ID {user_id} not found in Keycloak")
        required = bool(MFA_REQUIRED_ROLES.intersection(self.admin.get_user_roles(user_id)))
        enabled = self.admin.user_has_mfa(user_id)
        if required and not enabled:
            message = MSG_REQUIRED_NOT_ENABLED
        elif enabled:
            message = MSG_ENABLED
        else:
            message = MSG_OPTIONAL
        return {"enabled": enabled, "required": required, "message": message}

    def require_mfa(self, principal: Principal) -> None:
        """Raise ForbiddenError when the principal's role demands MFA it lacks.

        A directory outage reads as "no MFA", so the check fails closed.
        """
        if not principal.has_any_role(MFA_REQUIRED_ROLES):
            return
        if not self.admin.user_has_mfa(principal.identity_provider_user_id):
            raise ForbiddenError("MFA is required for your role. Please configure MFA first.")
