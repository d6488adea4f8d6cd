"""
aplia_backend.api.app

FastAPI app factory for the Aplia backend.

Responsibilities:
- Build the FastAPI application and register routers/middleware.
- Initialize and dispose shared infrastructure (DB engine/session factory, outbound
  HTTP client, instance status poller).
- Render service-layer errors as `{"detail": ...}` responses.
"""

from __future__ import annotations

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aplia_backend.api.routers.appointments import router as appointments_router
from aplia_backend.api.routers.billing import router as billing_router
from aplia_backend.api.routers.conversations import router as conversations_router
from aplia_backend.api.routers.dashboard import router as dashboard_router
from aplia_backend.api.routers.dev_auth import router as dev_auth_router
from aplia_backend.api.routers.evolution_webhook import router as evolution_webhook_router
from aplia_backend.api.routers.google import router as google_router
from aplia_backend.api.routers.health import router as health_router
from aplia_backend.api.routers.n8n_proxy import router as n8n_proxy_router
from aplia_backend.api.routers.profiles import router as profiles_router
from aplia_backend.api.routers.whatsapp import router as whatsapp_router
from aplia_backend.db.init_db import init_db
from aplia_backend.db.session import create_engine, create_sessionmaker
from aplia_backend.observability.logging import configure_logging, get_logger
from aplia_backend.observability.middleware import RequestContextMiddleware
from aplia_backend.services.errors import ServiceError
from aplia_backend.services.whatsapp import InstanceStatusPoller
from aplia_backend.settings import Settings, get_settings

log = get_logger(__name__)


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        log.warning("service_error", path=request.url.path, status=exc.status_code, detail=str(exc))
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(*, settings: Settings, http: httpx.AsyncClient | None = None) -> FastAPI:
    """
    Compose the service. `http` lets callers (tests) inject a client with a mock
    transport; when omitted, one is created on startup and closed on shutdown.
    """

    configure_logging(service_name=settings.service_name, level=settings.log_level)

    app = FastAPI(
        title="Aplia Backend",
        version="0.1.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    # Auth dependencies resolve settings through `get_settings`; pin them to ours.
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ServiceError, _service_error_handler)

    app.include_router(health_router, tags=["health"])
    app.include_router(dev_auth_router)
    app.include_router(n8n_proxy_router)
    app.include_router(whatsapp_router)
    app.include_router(evolution_webhook_router)
    app.include_router(profiles_router)
    app.include_router(conversations_router)
    app.include_router(appointments_router)
    app.include_router(google_router)
    app.include_router(billing_router)
    app.include_router(dashboard_router)

    @app.on_event("startup")
    async def _startup() -> None:
        log.info("startup", env=settings.env)
        engine = create_engine(settings)
        app.state.engine = engine
        app.state.sessionmaker = create_sessionmaker(engine)
        app.state.owns_http = http is None
        app.state.http = http or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        if settings.env in ("dev", "test"):
            # Prod uses Alembic migrations.
            await init_db(engine)

        app.state.poller = None
        if settings.instance_poll_enabled:
            poller = InstanceStatusPoller(
                session_factory=app.state.sessionmaker, settings=settings, http=app.state.http
            )
            poller.start()
            app.state.poller = poller

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        poller = getattr(app.state, "poller", None)
        if poller is not None:
            await poller.stop()
        client = getattr(app.state, "http", None)
        if client is not None and getattr(app.state, "owns_http", False):
            await client.aclose()
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()
        log.info("shutdown")

    return app


# --- Module Notes -----------------------------------------------------------
# App composition stays here; business logic lives in services.
