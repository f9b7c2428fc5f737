"""
Access decisions for clinical resources.

Precedence: admin -> patient-context claim -> linked patient records ->
practitioner -> scope. Instance mode denies resources owned by anyone outside
the allowed patient set; query-filter mode narrows the repository query.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from backend.identity_access.access import (
    NO_LINKED_PATIENTS,
    OWN_RECORDS_ONLY,
    AccessDecisionEngine,
    AllowAll,
    AllowFiltered,
    Deny,
)
from backend.identity_access.domain import Principal
from backend.identity_access.errors import ErrorKind, ForbiddenError


class _Links:
    def __init__(self, links: Optional[Dict[str, List[str]]] = None) -> None:
        self.links = links or {}
        self.calls: List[str] = []

    def patient_ids_for_user(self, identity_provider_user_id: str) -> List[str]:
        self.calls.append(identity_provider_user_id)
        return self.links.get(identity_provider_user_id, [])


class _Repo:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def list_resources(self, resource_type: str, *, patient_refs: Optional[List[str]] = None) -> List[Any]:
        self.calls.append({"resource_type": resource_type, "patient_refs": patient_refs})
        return ["row"]


def _principal(roles=(), *, patient_context=None, scopes=(), kc_id="kc-1") -> Principal:
    return Principal(
        id="u-1",
        identity_provider_user_id=kc_id,
        roles=frozenset(roles),
        patient_context=patient_context,
        scopes=frozenset(scopes),
    )


@pytest.mark.anyio
async def test_admin_sees_everything_even_with_patient_context():
    engine = AccessDecisionEngine(_Links())
    p = _principal({"admin"}, patient_context="123")
    assert engine.decide(p, "Patient") == AllowAll()
    assert engine.check_resource(p, "Patient/999", "Encounter") == AllowAll()


@pytest.mark.anyio
async def test_patient_context_claim_filters_to_that_patient():
    links = _Links({"kc-1": ["555"]})
    engine = AccessDecisionEngine(links)
    p = _principal({"patient"}, patient_context="Patient/123")

    decision = engine.decide(p, "Encounter")
    assert decision == AllowFiltered(frozenset({"123"}))
    assert decision.references() == ["Patient/123"]
    assert links.calls == []


@pytest.mark.anyio
async def test_instance_check_with_context_matches_owner():
    engine = AccessDecisionEngine(_Links())
    p = _principal(patient_context="123")
    assert isinstance(engine.check_resource(p, "Patient/123", "Encounter"), AllowFiltered)
    assert engine.check_resource(p, "Patient/456", "Encounter") == Deny(OWN_RECORDS_ONLY)
    assert engine.check_resource(p, None, "Encounter") == Deny(OWN_RECORDS_ONLY)


@pytest.mark.anyio
async def test_patient_role_uses_linked_records():
    engine = AccessDecisionEngine(_Links({"kc-1": ["Patient/a", "b"]}))
    p = _principal({"patient"})
    decision = engine.decide(p, "Patient")
    assert decision == AllowFiltered(frozenset({"a", "b"}))
    assert decision.references() == ["Patient/a", "Patient/b"]


@pytest.mark.anyio
async def test_patient_without_links_is_denied():
    engine = AccessDecisionEngine(_Links())
    p = _principal({"patient"}, scopes={"patient:read"})
    assert engine.decide(p, "Patient") == Deny(NO_LINKED_PATIENTS)


@pytest.mark.anyio
async def test_practitioner_sees_all():
    engine = AccessDecisionEngine(_Links())
    assert engine.decide(_principal({"practitioner"}), "Encounter") == AllowAll()


@pytest.mark.anyio
async def test_scope_grants_or_denies_for_other_roles():
    engine = AccessDecisionEngine(_Links())
    assert engine.decide(_principal({"viewer"}, scopes={"encounter:read"}), "Encounter") == AllowAll()

    denied = engine.decide(_principal({"viewer"}, scopes={"patient:read"}), "Encounter")
    assert denied == Deny("missing scope encounter:read")


@pytest.mark.anyio
async def test_ensure_can_access_raises_forbidden():
    engine = AccessDecisionEngine(_Links())
    p = _principal(patient_context="123")
    engine.ensure_can_access(p, "Patient/123", "Patient")
    with pytest.raises(ForbiddenError) as ei:
        engine.ensure_can_access(p, "Patient/456", "Patient")
    assert ei.value.kind is ErrorKind.FORBIDDEN
    assert OWN_RECORDS_ONLY in ei.value.message


@pytest.mark.anyio
async def test_filter_query_narrows_repository_call():
    engine = AccessDecisionEngine(_Links({"kc-1": ["b", "a"]}))
    repo = _Repo()

    assert engine.filter_query(_principal({"admin"}), repo, "Encounter") == ["row"]
    assert engine.filter_query(_principal({"patient"}), repo, "Encounter") == ["row"]
    assert repo.calls == [
        {"resource_type": "Encounter", "patient_refs": None},
        {"resource_type": "Encounter", "patient_refs": ["Patient/a", "Patient/b"]},
    ]


@pytest.mark.anyio
async def test_filter_query_denied_returns_empty_without_query():
    engine = AccessDecisionEngine(_Links())
    repo = _Repo()
    assert engine.filter_query(_principal({"viewer"}), repo, "Encounter") == []
    assert repo.calls == []
