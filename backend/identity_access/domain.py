"""
Identity domain constants and simple helpers.

Why:
- Centralize roles, FHIR resource types and scope names to avoid drift between
  the SMART flow, the access-decision engine and the web layer.
- Keep terms aligned with the glossary (patient-context, fhirUser, scope).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


ROLE_PATIENT = "patient"
ROLE_PRACTITIONER = "practitioner"
ROLE_ADMIN = "admin"

# Roles that bypass patient-context filtering entirely.
ADMIN_EQUIVALENT_ROLES = frozenset({ROLE_ADMIN})
# Roles that currently see all clinical records (to be narrowed to assigned patients).
PRACTITIONER_EQUIVALENT_ROLES = frozenset({ROLE_PRACTITIONER})
# Roles for which a second factor is mandatory.
MFA_REQUIRED_ROLES = ADMIN_EQUIVALENT_ROLES | PRACTITIONER_EQUIVALENT_ROLES


RESOURCE_PATIENT = "Patient"
RESOURCE_PRACTITIONER = "Practitioner"
RESOURCE_ENCOUNTER = "Encounter"
RESOURCE_CONSENT = "Consent"
RESOURCE_DOCUMENT_REFERENCE = "DocumentReference"

ACTION_READ = "read"
ACTION_WRITE = "write"
ACTION_SHARE = "share"

# scope -> (resource type, action)
SCOPE_PERMISSIONS: dict[str, tuple[str, str]] = {
    "patient:read": (RESOURCE_PATIENT, ACTION_READ),
    "patient:write": (RESOURCE_PATIENT, ACTION_WRITE),
    "practitioner:read": (RESOURCE_PRACTITIONER, ACTION_READ),
    "practitioner:write": (RESOURCE_PRACTITIONER, ACTION_WRITE),
    "encounter:read": (RESOURCE_ENCOUNTER, ACTION_READ),
    "encounter:write": (RESOURCE_ENCOUNTER, ACTION_WRITE),
    "document:read": (RESOURCE_DOCUMENT_REFERENCE, ACTION_READ),
    "document:write": (RESOURCE_DOCUMENT_REFERENCE, ACTION_WRITE),
    "consent:read": (RESOURCE_CONSENT, ACTION_READ),
    "consent:write": (RESOURCE_CONSENT, ACTION_WRITE),
    "consent:share": (RESOURCE_CONSENT, ACTION_SHARE),
}


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as seen by the access layer.

    Built per request by the authentication adapter (see `tokens.py`); the
    identity_access core only reads it.
    """

    id: str
    identity_provider_user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)
    patient_context: Optional[str] = None
    fhir_user_context: Optional[str] = None
    scopes: frozenset[str] = field(default_factory=frozenset)

    def has_any_role(self, roles: frozenset[str]) -> bool:
        return bool(self.roles & roles)


def patient_id_from_reference(ref: Optional[str]) -> Optional[str]:
    """Return the bare id of a `Patient/<id>` reference (or a bare id)."""
    if not ref:
        return None
    value = str(ref).strip()
    if value.startswith("Patient/"):
        value = value[len("Patient/"):]
    return value or None


__all__ = [
    "ADMIN_EQUIVALENT_ROLES",
    "PRACTITIONER_EQUIVALENT_ROLES",
    "MFA_REQUIRED_ROLES",
    "SCOPE_PERMISSIONS",
    "Principal",
    "patient_id_from_reference",
]
