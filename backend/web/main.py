"CareCore identity & access API"
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable
import logging
import os
import sys

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from backend.identity_access.admin_client import AdminClient
from backend.identity_access.domain import Principal
from backend.identity_access.mfa import MFAManager
from backend.identity_access.oidc import OIDCConfig
from backend.identity_access.smart import SmartAuthorizer
from backend.identity_access.stores import LaunchContextStore
from backend.identity_access.tokens import principal_from_claims, verify_access_token
from backend.web import config as _cfg
from backend.web.routes.mfa import mfa_router
from backend.web.routes.smart import smart_router


logger = logging.getLogger("carecore.web")


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via CARECORE_ENABLE_DOTENV (default true outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("CARECORE_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


@dataclass
class Services:
    """Process-wide collaborators shared by the routers via `app.state.services`."""

    cfg: OIDCConfig
    admin: AdminClient
    launch_store: LaunchContextStore
    smart: SmartAuthorizer
    mfa: MFAManager
    verify_principal: Callable[[str], Principal]


def build_services(cfg: OIDCConfig | None = None) -> Services:
    cfg = cfg or OIDCConfig.from_env()
    admin = AdminClient(cfg)
    store = LaunchContextStore()

    def _verify(token: str) -> Principal:
        return principal_from_claims(verify_access_token(token, cfg))

    return Services(
        cfg=cfg,
        admin=admin,
        launch_store=store,
        smart=SmartAuthorizer(cfg, admin, store),
        mfa=MFAManager(admin, realm=cfg.realm),
        verify_principal=_verify,
    )


def create_app(services: Services | None = None) -> FastAPI:
    """Build the FastAPI app; tests pass `services` with fake collaborators."""
    if services is None:
        if _should_load_dotenv():
            from dotenv import load_dotenv

            load_dotenv()
        # Minimal production safety checks (fail-fast on insecure config)
        _cfg.ensure_secure_config_on_startup()
        services = build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.launch_store.start()
        logger.info("Launch context sweeper started")
        try:
            yield
        finally:
            services.launch_store.stop()
            logger.info("Launch context sweeper stopped")

    app = FastAPI(
        title="CareCore Identity & Access",
        description="SMART-on-FHIR authorization and MFA management",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.include_router(smart_router, prefix=services.cfg.api_prefix)
    app.include_router(mfa_router, prefix=services.cfg.api_prefix)

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "healthy"}, headers={"Cache-Control": "no-store"})

    return app
