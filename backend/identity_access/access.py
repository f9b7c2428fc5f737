"""
Access decisions for clinical resources.

Why: Every patient/encounter/practitioner read path asks the same question:
may this principal see this resource (instance mode), or which patients'
records may it see (query-filter mode)? Keep the answer in one pure function
so list and read paths cannot drift apart.

Precedence (first match wins):
1. Administrator-equivalent role -> AllowAll.
2. Patient-context claim in the token -> AllowFiltered to that patient.
3. Patient identity linked to patient records -> AllowFiltered to the links.
4. Practitioner-equivalent role -> AllowAll (to be narrowed to assigned patients).
5. `<resource>:<action>` scope -> AllowAll, else Deny.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Protocol, Union
import logging

from .domain import (
    ACTION_READ,
    ADMIN_EQUIVALENT_ROLES,
    PRACTITIONER_EQUIVALENT_ROLES,
    RESOURCE_CONSENT,
    RESOURCE_DOCUMENT_REFERENCE,
    RESOURCE_ENCOUNTER,
    RESOURCE_PATIENT,
    RESOURCE_PRACTITIONER,
    ROLE_PATIENT,
    SCOPE_PERMISSIONS,
    Principal,
    patient_id_from_reference,
)
from .errors import ForbiddenError


logger = logging.getLogger("carecore.identity_access.access")

OWN_RECORDS_ONLY = "patients may only access their own records"
NO_LINKED_PATIENTS = "no patient records linked to this account"

_SCOPE_RESOURCE_NAMES = {
    RESOURCE_PATIENT: "patient",
    RESOURCE_PRACTITIONER: "practitioner",
    RESOURCE_ENCOUNTER: "encounter",
    RESOURCE_DOCUMENT_REFERENCE: "document",
    RESOURCE_CONSENT: "consent",
}


@dataclass(frozen=True)
class AllowAll:
    pass


@dataclass(frozen=True)
class AllowFiltered:
    patient_ids: frozenset[str]

    def references(self) -> List[str]:
        """`Patient/<id>` references for a subject-reference predicate."""
        return [f"Patient/{pid}" for pid in sorted(self.patient_ids)]

    def permits(self, owner_ref: Optional[str]) -> bool:
        owner = patient_id_from_reference(owner_ref)
        return owner is not None and owner in self.patient_ids


@dataclass(frozen=True)
class Deny:
    reason: str


AccessDecision = Union[AllowAll, AllowFiltered, Deny]


class PatientLinkLookup(Protocol):
    """Directory port: patient record ids owned by an IdP user."""

    def patient_ids_for_user(self, identity_provider_user_id: str) -> Iterable[str]: ...


class ResourceRepository(Protocol):
    """Resource port used in query-filter mode.

    `patient_refs=None` means unfiltered; otherwise only resources whose
    owning-patient reference is in the list are returned.
    """

    def list_resources(self, resource_type: str, *, patient_refs: Optional[List[str]] = None) -> List[Any]: ...


class ScopePermissions:
    """Maps `<resource>:<action>` scopes to FHIR resource permissions."""

    def __init__(self, table: Optional[dict[str, tuple[str, str]]] = None) -> None:
        self.table = dict(SCOPE_PERMISSIONS if table is None else table)

    @staticmethod
    def _scope_resource(resource_type: str) -> str:
        return _SCOPE_RESOURCE_NAMES.get(resource_type, resource_type.lower())

    def has_permission(self, scope: str, resource_type: str, action: str) -> bool:
        return self.table.get(scope) == (resource_type, action)

    def get_scope_for_resource(self, resource_type: str, action: str) -> str:
        return f"{self._scope_resource(resource_type)}:{action}"

    def get_required_scopes(self, resource_type: str, action: str) -> List[str]:
        """Scopes required for the permission; empty when none is defined."""
        scope = self.get_scope_for_resource(resource_type, action)
        return [scope] if scope in self.table else []

    @staticmethod
    def validate_scopes(granted: Iterable[str], required: Iterable[str]) -> bool:
        have = set(granted)
        return all(scope in have for scope in required)

    def parse_scope(self, scope: str) -> Optional[tuple[str, str]]:
        return self.table.get(scope)

    def get_scopes_for_resource(self, resource_type: str) -> List[str]:
        prefix = f"{self._scope_resource(resource_type)}:"
        return [scope for scope in self.table if scope.startswith(prefix)]

    def has_resource_permission(self, principal: Principal, resource_type: str, action: str) -> bool:
        if principal.has_any_role(ADMIN_EQUIVALENT_ROLES):
            return True
        required = self.get_required_scopes(resource_type, action)
        if not required:
            # No scope defined for this resource/action
            logger.debug("No scope defined for %s:%s", resource_type, action)
            return False
        return self.validate_scopes(principal.scopes, required)


class AccessDecisionEngine:
    def __init__(self, links: PatientLinkLookup, scopes: Optional[ScopePermissions] = None) -> None:
        self.links = links
        self.scopes = scopes or ScopePermissions()

    def _linked_patients(self, principal: Principal) -> frozenset[str]:
        ids = self.links.patient_ids_for_user(principal.identity_provider_user_id) or ()
        return frozenset(pid for pid in (patient_id_from_reference(i) for i in ids) if pid)

    def decide(self, principal: Principal, resource_type: str, action: str = ACTION_READ) -> AccessDecision:
        """Query-filter mode: which records of `resource_type` may be listed."""
        if principal.has_any_role(ADMIN_EQUIVALENT_ROLES):
            return AllowAll()
        context = patient_id_from_reference(principal.patient_context)
        if context:
            return AllowFiltered(frozenset({context}))
        if ROLE_PATIENT in principal.roles:
            linked = self._linked_patients(principal)
            if linked:
                return AllowFiltered(linked)
            return Deny(NO_LINKED_PATIENTS)
        if principal.has_any_role(PRACTITIONER_EQUIVALENT_ROLES):
            return AllowAll()
        if self.scopes.has_resource_permission(principal, resource_type, action):
            return AllowAll()
        scope = self.scopes.get_scope_for_resource(resource_type, action)
        return Deny(f"missing scope {scope}")

    def check_resource(
        self,
        principal: Principal,
        owner_ref: Optional[str],
        resource_type: str,
        action: str = ACTION_READ,
    ) -> AccessDecision:
        """Instance mode: evaluate against an already-fetched resource's owner."""
        decision = self.decide(principal, resource_type, action)
        if isinstance(decision, AllowFiltered) and not decision.permits(owner_ref):
            return Deny(OWN_RECORDS_ONLY)
        return decision

    def ensure_can_access(
        self,
        principal: Principal,
        owner_ref: Optional[str],
        resource_type: str,
        action: str = ACTION_READ,
    ) -> None:
        decision = self.check_resource(principal, owner_ref, resource_type, action)
        if isinstance(decision, Deny):
            logger.info("Access denied for principal %s on %s: %s", principal.id, resource_type, decision.reason)
            raise ForbiddenError(f"You do not have permission to access this {resource_type}: {decision.reason}")

    def filter_query(
        self,
        principal: Principal,
        repository: ResourceRepository,
        resource_type: str,
        action: str = ACTION_READ,
    ) -> List[Any]:
        decision = self.decide(principal, resource_type, action)
        if isinstance(decision, AllowAll):
            return repository.list_resources(resource_type)
        if isinstance(decision, AllowFiltered):
            return repository.list_resources(resource_type, patient_refs=decision.references())
        return []


__all__ = [
    "AccessDecision",
    "AccessDecisionEngine",
    "AllowAll",
    "AllowFiltered",
    "Deny",
    "PatientLinkLookup",
    "ResourceRepository",
    "ScopePermissions",
]
