"""
Keycloak admin token cache.

Scenario: the admin client obtains a client-credentials token once, reuses it
until five seconds before expiry, and fails closed (nothing cached) when the
grant cannot be completed.
"""
from __future__ import annotations

import pytest
import requests

from backend.identity_access import admin_client
from backend.identity_access.admin_client import AdminClient
from backend.identity_access.errors import AdminUnavailableError, ErrorKind
from backend.identity_access.oidc import OIDCConfig
from utils.fake_keycloak import FakeClock, FakeKeycloakHTTP, FakeResponse


TOKEN_URL = "http://kc.test/realms/carecore/protocol/openid-connect/token"


def _cfg(**overrides) -> OIDCConfig:
    values = dict(base_url="http://kc.test", realm="carecore", admin_client_secret="s3cret", http_timeout=3.0)
    values.update(overrides)
    return OIDCConfig(**values)


@pytest.fixture
def http(monkeypatch: pytest.MonkeyPatch) -> FakeKeycloakHTTP:
    fake = FakeKeycloakHTTP()
    monkeypatch.setattr(admin_client, "requests", fake)
    return fake


@pytest.mark.anyio
async def test_token_is_reused_until_five_seconds_before_expiry(http: FakeKeycloakHTTP):
    issued = iter(["tok-1", "tok-2"])
    http.on("post", TOKEN_URL, lambda **kw: FakeResponse(200, {"access_token": next(issued), "expires_in": 60}))
    clock = FakeClock()
    client = AdminClient(_cfg(), clock=clock)

    assert client.authenticate() == "tok-1"
    clock.advance(54)
    assert client.authenticate() == "tok-1"
    assert len(http.calls_to("post", TOKEN_URL)) == 1

    clock.advance(1)  # now == expires_at (60 - 5)
    assert client.authenticate() == "tok-2"
    assert len(http.calls_to("post", TOKEN_URL)) == 2


@pytest.mark.anyio
async def test_client_credentials_grant_payload_and_timeout(http: FakeKeycloakHTTP):
    http.on("post", TOKEN_URL, FakeResponse(200, {"access_token": "abc", "expires_in": 300}))
    AdminClient(_cfg(admin_client_id="carecore-admin-cli")).authenticate()

    (call,) = http.calls_to("post", TOKEN_URL)
    assert call["data"] == {
        "grant_type": "client_credentials",
        "client_id": "carecore-admin-cli",
        "client_secret": "s3cret",
    }
    assert call["timeout"] == 3.0


@pytest.mark.anyio
async def test_missing_expires_in_assumes_sixty_seconds(http: FakeKeycloakHTTP):
    http.on("post", TOKEN_URL, FakeResponse(200, {"access_token": "abc"}))
    clock = FakeClock()
    client = AdminClient(_cfg(), clock=clock)
    client.authenticate()
    assert client._token is not None
    assert client._token.expires_at == clock.now + 55


@pytest.mark.anyio
async def test_admin_realm_is_used_for_the_grant(http: FakeKeycloakHTTP):
    master_url = "http://kc.test/realms/master/protocol/openid-connect/token"
    http.on("post", master_url, FakeResponse(200, {"access_token": "m", "expires_in": 60}))
    assert AdminClient(_cfg(admin_realm="master")).authenticate() == "m"


@pytest.mark.anyio
async def test_transport_error_fails_closed_and_caches_nothing(http: FakeKeycloakHTTP):
    http.on("post", TOKEN_URL, requests.ConnectionError("down"))
    client = AdminClient(_cfg())
    with pytest.raises(AdminUnavailableError) as ei:
        client.authenticate()
    assert ei.value.kind is ErrorKind.UNAVAILABLE
    assert client._token is None

    http.on("post", TOKEN_URL, FakeResponse(200, {"access_token": "late", "expires_in": 60}))
    assert client.authenticate() == "late"


@pytest.mark.anyio
async def test_error_status_or_missing_access_token_fails_closed(http: FakeKeycloakHTTP):
    client = AdminClient(_cfg())
    http.on("post", TOKEN_URL, FakeResponse(401, {"error": "unauthorized_client"}))
    with pytest.raises(AdminUnavailableError):
        client.authenticate()
    http.on("post", TOKEN_URL, FakeResponse(200, {"token_type": "Bearer"}))
    with pytest.raises(AdminUnavailableError):
        client.authenticate()
    assert client._token is None


@pytest.mark.anyio
async def test_missing_secret_never_calls_keycloak(http: FakeKeycloakHTTP):
    client = AdminClient(_cfg(admin_client_secret=None))
    with pytest.raises(AdminUnavailableError):
        client.authenticate()
    assert http.calls == []


@pytest.mark.anyio
async def test_directory_reads_degrade_when_token_unavailable(http: FakeKeycloakHTTP):
    http.on("post", TOKEN_URL, requests.ConnectionError("down"))
    client = AdminClient(_cfg())
    assert client.get_user_roles("u1") == []
    assert client.find_user_by_id("u1") is None
    assert client.find_client_by_id("app-123") is None
    assert client.user_has_mfa("u1") is False
    assert client.add_role_to_user("u1", "patient") is False
