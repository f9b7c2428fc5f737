"""
TOTP credential lifecycle through the Keycloak admin API.
"""
from __future__ import annotations

import pytest

from backend.identity_access import admin_client
from backend.identity_access.admin_client import AdminClient
from backend.identity_access.oidc import OIDCConfig
from utils.fake_keycloak import FakeKeycloakHTTP, FakeResponse


TOKEN_URL = "http://kc.test/realms/carecore/protocol/openid-connect/token"
ADMIN = "http://kc.test/admin/realms/carecore"
CREDS = f"{ADMIN}/users/u1/credentials"


@pytest.fixture
def http(monkeypatch: pytest.MonkeyPatch) -> FakeKeycloakHTTP:
    fake = FakeKeycloakHTTP()
    fake.on("post", TOKEN_URL, FakeResponse(200, {"access_token": "adm", "expires_in": 300}))
    monkeypatch.setattr(admin_client, "requests", fake)
    return fake


@pytest.fixture
def client() -> AdminClient:
    return AdminClient(OIDCConfig(base_url="http://kc.test", admin_client_secret="s3cret"))


@pytest.mark.anyio
async def test_user_has_mfa_detects_otp_credential(http: FakeKeycloakHTTP, client: AdminClient):
    http.on("get", CREDS, FakeResponse(200, [{"id": "c1", "type": "password"}]))
    assert client.user_has_mfa("u1") is False
    http.on("get", CREDS, FakeResponse(200, [{"id": "c1", "type": "password"}, {"id": "c2", "type": "otp"}]))
    assert client.user_has_mfa("u1") is True


@pytest.mark.anyio
async def test_generate_totp_secret_refuses_when_configured(http: FakeKeycloakHTTP, client: AdminClient):
    http.on("get", CREDS, FakeResponse(200, [{"id": "c2", "type": "otp"}]))
    assert client.generate_totp_secret("u1") is None
    assert http.calls_to("post", f"{ADMIN}/users/u1/totp/generate") == []


@pytest.mark.anyio
async def test_generate_totp_secret_returns_secret(http: FakeKeycloakHTTP, client: AdminClient):
    http.on("get", CREDS, FakeResponse(200, []))
    http.on("post", f"{ADMIN}/users/u1/totp/generate", FakeResponse(200, {"secret": "JBSWY3DP"}))
    assert client.generate_totp_secret("u1") == {"secret": "JBSWY3DP"}


@pytest.mark.anyio
async def test_verify_and_enable_sends_enable_flag(http: FakeKeycloakHTTP, client: AdminClient):
    url = f"{ADMIN}/users/u1/totp/verify"
    http.on("post", url, FakeResponse(200, {"valid": True}))
    assert client.verify_and_enable_totp("u1", "123456") is True
    assert client.verify_totp_code("u1", "123456") is True
    enable_call, check_call = http.calls_to("post", url)
    assert enable_call["json"] == {"code": "123456", "enable": True}
    assert check_call["json"] == {"code": "123456"}


@pytest.mark.anyio
async def test_verify_rejects_non_true_or_error(http: FakeKeycloakHTTP, client: AdminClient):
    url = f"{ADMIN}/users/u1/totp/verify"
    http.on("post", url, FakeResponse(200, {"valid": "yes"}))
    assert client.verify_totp_code("u1", "123456") is False
    http.on("post", url, FakeResponse(400, {"error": "invalid"}))
    assert client.verify_totp_code("u1", "123456") is False


@pytest.mark.anyio
async def test_remove_totp_credential(http: FakeKeycloakHTTP, client: AdminClient):
    http.on("get", CREDS, FakeResponse(200, [{"id": "c1", "type": "password"}, {"id": "c2", "type": "otp"}]))
    http.on("delete", f"{CREDS}/c2", FakeResponse(204))
    assert client.remove_totp_credential("u1") is True
    assert len(http.calls_to("delete", f"{CREDS}/c2")) == 1


@pytest.mark.anyio
async def test_remove_totp_credential_false_when_none(http: FakeKeycloakHTTP, client: AdminClient):
    http.on("get", CREDS, FakeResponse(200, [{"id": "c1", "type": "password"}]))
    assert client.remove_totp_credential("u1") is False
