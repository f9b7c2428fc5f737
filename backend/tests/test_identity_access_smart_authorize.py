"""
SMART authorization request: parameter validation and authorization URL.

Scenario: a registered app `app-123` with redirect `https://app.com/callback`
starts the Authorization Code flow; we redirect to Keycloak with our own
callback and the app's state/redirect packed into `state`.
"""
from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from backend.identity_access.errors import ConfigurationError, ErrorKind, ParameterValidationError
from backend.identity_access.smart import AuthorizeParams, FlowState, SmartAuthorizer
from utils.fake_keycloak import FakeAdmin, make_client
from utils.smart_fixtures import CALLBACK_URL, build_harness, smart_config


def _params(**overrides) -> AuthorizeParams:
    values = dict(
        client_id="app-123",
        response_type="code",
        redirect_uri="https://app.com/callback",
        scope="patient/123.read",
        state="client-state",
    )
    values.update(overrides)
    return AuthorizeParams(**values)


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.mark.anyio
async def test_authorization_url_targets_idp_with_our_callback():
    h = build_harness()
    url = h.smart.build_authorization_url(_params(aud="https://fhir.example.com/fhir"), "generated", CALLBACK_URL)

    parsed = urlparse(url)
    assert parsed.scheme == "https"
    assert parsed.netloc == "id.example.com"
    assert parsed.path == "/realms/carecore/protocol/openid-connect/auth"
    q = _query(url)
    assert q["client_id"] == "app-123"
    assert q["response_type"] == "code"
    assert q["redirect_uri"] == CALLBACK_URL
    assert q["scope"] == "patient/123.read"
    assert q["aud"] == "https://fhir.example.com/fhir"

    decoded = SmartAuthorizer.decode_state_token(q["state"])
    assert decoded is not None
    assert decoded.state == "client-state"
    assert decoded.client_redirect_uri == "https://app.com/callback"
    assert decoded.client_id == "app-123"


@pytest.mark.anyio
async def test_generated_state_used_when_app_sends_none():
    h = build_harness()
    url = h.smart.build_authorization_url(_params(state=None), "generated", CALLBACK_URL)
    q = _query(url)
    assert "aud" not in q
    assert SmartAuthorizer.decode_state_token(q["state"]).state == "generated"


@pytest.mark.anyio
async def test_local_problems_reported_together():
    h = build_harness()
    with pytest.raises(ParameterValidationError) as ei:
        h.smart.validate_auth_params(_params(response_type="token", scope="   "))
    err = ei.value
    assert err.kind is ErrorKind.VALIDATION
    assert [i.location for i in err.issues] == ["response_type", "scope"]


@pytest.mark.anyio
async def test_scope_with_forbidden_characters_rejected():
    h = build_harness()
    with pytest.raises(ParameterValidationError) as ei:
        h.smart.validate_auth_params(_params(scope="patient/123.read;drop"))
    assert ei.value.issues[0].location == "scope"


@pytest.mark.anyio
@pytest.mark.parametrize("scope", ["openid profile", "patient:read encounter:write", "patient/*.read launch/patient"])
async def test_accepted_scopes(scope):
    h = build_harness()
    h.smart.validate_auth_params(_params(scope=scope))


@pytest.mark.anyio
async def test_unknown_client_is_unauthorized():
    h = build_harness()
    with pytest.raises(ParameterValidationError) as ei:
        h.smart.validate_auth_params(_params(client_id="ghost"))
    assert ei.value.kind is ErrorKind.UNAUTHORIZED
    assert ei.value.issues[0].location == "client_id"
    assert ei.value.issues[0].diagnostics


@pytest.mark.anyio
async def test_client_without_standard_flow_is_bad_request():
    admin = FakeAdmin([make_client("app-123", standard_flow_enabled=False)])
    h = build_harness(admin=admin)
    with pytest.raises(ParameterValidationError) as ei:
        h.smart.validate_auth_params(_params())
    assert ei.value.kind is ErrorKind.VALIDATION
    assert ei.value.issues[0].location == "client_id"


@pytest.mark.anyio
async def test_unregistered_redirect_uri_is_bad_request():
    h = build_harness()
    with pytest.raises(ParameterValidationError) as ei:
        h.smart.validate_auth_params(_params(redirect_uri="https://evil.example/cb"))
    assert ei.value.kind is ErrorKind.VALIDATION
    assert ei.value.issues[0].location == "redirect_uri"


@pytest.mark.anyio
async def test_wildcard_redirect_uri_accepted():
    admin = FakeAdmin([make_client("app-123", redirect_uris=["https://app.com/*"])])
    h = build_harness(admin=admin)
    h.smart.validate_auth_params(_params(redirect_uri="https://app.com/deep/cb"))


@pytest.mark.anyio
async def test_missing_idp_url_is_configuration_error():
    h = build_harness(cfg=smart_config(base_url="", public_base_url=None))
    with pytest.raises(ConfigurationError) as ei:
        h.smart.build_authorization_url(_params(), "generated", CALLBACK_URL)
    assert ei.value.kind is ErrorKind.UNAVAILABLE


@pytest.mark.anyio
async def test_start_authorization_returns_flow_result():
    h = build_harness()
    ok = h.smart.start_authorization(_params(state=None), CALLBACK_URL)
    assert ok.state is FlowState.INITIATED and ok.ok
    assert ok.csrf_state
    assert SmartAuthorizer.decode_state_token(_query(ok.authorization_url)["state"]).state == ok.csrf_state

    bad = h.smart.start_authorization(_params(client_id="ghost"), CALLBACK_URL)
    assert bad.state is FlowState.ERROR and not bad.ok
    assert isinstance(bad.error, ParameterValidationError)
    assert bad.authorization_url is None and bad.csrf_state is None


@pytest.mark.anyio
async def test_callback_url_defaults_and_prefix():
    h = build_harness()
    assert h.smart.get_callback_url() == "http://localhost:3000/api/fhir/token"
    assert h.smart.get_callback_url(protocol="https", host="api.example.com") == "https://api.example.com/api/fhir/token"
    h2 = build_harness(cfg=smart_config(api_prefix="/v2"))
    assert h2.smart.get_callback_url(protocol="https", host="x") == "https://x/v2/fhir/token"
