from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from oauth_engine.api.health import router as health_router
from oauth_engine.api.metrics_endpoint import router as metrics_router
from oauth_engine.api.oauth import router as oauth_router
from oauth_engine.api.resource import router as resource_router
from oauth_engine.core.config import SETTINGS, Settings
from oauth_engine.core.errors import register_error_handlers
from oauth_engine.core.logging import setup_logging
from oauth_engine.middleware.metrics import MetricsMiddleware
from oauth_engine.middleware.request_context import RequestContextMiddleware
from oauth_engine.repos.factory import Stores, build_stores, prepare_stores
from oauth_engine.services.authorization_endpoint import AuthorizationEndpoint
from oauth_engine.services.identity import IdentityProvider, build_identity_provider
from oauth_engine.services.token_endpoint import TokenEndpoint
from oauth_engine.worker import run_sweeper

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings = SETTINGS,
    *,
    stores: Stores | None = None,
    identity: IdentityProvider | None = None,
) -> FastAPI:
    """Build the application.

    Tests pass their own ``stores`` (in-memory, fake clock) and get an app
    wired to them; the lifespan then leaves those stores alone.
    """
    owns_stores = stores is None
    if stores is None:
        stores = build_stores(settings)
    if identity is None:
        identity = build_identity_provider(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if owns_stores:
            await prepare_stores(app.state.stores, settings)
        checks = await app.state.stores.check()
        logger.info("Backends  %s", checks)

        sweeper: asyncio.Task[None] | None = None
        if app.state.stores.engine is None and app.state.stores.redis is None:
            # Nobody else can see in-memory stores; sweep them here.
            sweeper = asyncio.create_task(
                run_sweeper(app.state.stores, settings.sweep_interval_sec)
            )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            if owns_stores:
                await app.state.stores.aclose()

    app = FastAPI(
        title="oauth-engine",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
    )

    app.state.settings = settings
    app.state.stores = stores
    app.state.identity = identity
    app.state.authorization_endpoint = AuthorizationEndpoint(
        stores.clients,
        stores.codes,
        default_scope=settings.default_scope,
        login_url=settings.idp_login_url,
        consent_url=settings.idp_consent_url,
    )
    app.state.token_endpoint = TokenEndpoint(stores.clients, stores.codes, stores.tokens)

    register_error_handlers(app)

    # Middleware execution order: last-added runs first (outermost layer).
    # RequestContext (outermost) → Metrics → route handler
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(metrics_router)
    app.include_router(health_router)
    app.include_router(oauth_router)
    app.include_router(resource_router)
    return app


app = create_app()

logger.info(
    "oauth-engine started  env=%s log_level=%s port=%d docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
)
