"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
keep environment-driven configuration deterministic across tests.
"""
import os
import sys
from pathlib import Path
import pytest

# Load .env only when E2E suite is explicit enabled.
try:
    from dotenv import load_dotenv  # type: ignore
    if os.getenv("RUN_E2E", "0") == "1":
        load_dotenv()
except Exception:
    pass


# Ensure `backend.*` and test helpers are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Clear env-driven toggles that may leak across tests.

    Why:
        Config guard and proxy tests set CARECORE_ENV / CARECORE_TRUST_PROXY;
        a missed teardown would flip cookie and origin behavior elsewhere.
    """
    for var in (
        "CARECORE_ENV",
        "CARECORE_TRUST_PROXY",
        "FHIR_SERVER_URL",
        "API_PREFIX",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_jwks_cache():
    """Drop cached JWKS between tests so fake key sets do not leak."""
    try:
        from backend.identity_access.tokens import JWKS_CACHE
    except Exception:
        yield
        return
    JWKS_CACHE.clear()
    yield
    JWKS_CACHE.clear()
