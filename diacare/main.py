"""DiaCare Sync API — FastAPI application entry point.

Run locally:
    uvicorn diacare.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from diacare.config import Settings, get_settings
from diacare.middleware.rate_limit import RateLimitMiddleware
from diacare.middleware.security import SecurityHeadersMiddleware
from diacare.routers import health, sync
from diacare.sync.store import InMemorySyncStore, SyncStore
from diacare.sync.service import SyncService, SyncValidationError

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("diacare")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    When ``database_url`` is set and no store was injected, the in-memory
    store is replaced by the Postgres one for the lifetime of the app.
    """
    settings: Settings = app.state.settings
    service: SyncService = app.state.sync_service
    logger.info(
        "Starting DiaCare Sync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    use_postgres = settings.database_url and not app.state.store_injected
    if use_postgres:
        from diacare.services.postgres import close_pool, init_pool
        from diacare.sync.pg_store import PostgresSyncStore

        pool = await init_pool(settings)
        store = PostgresSyncStore(pool)
        await store.create_schema()
        service.store = store

    logger.info("Sync store backend: %s", service.store.BACKEND)
    yield

    if use_postgres:
        await close_pool()
    logger.info("DiaCare Sync API shut down")


async def _sync_validation_handler(request: Request, exc: SyncValidationError) -> JSONResponse:
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder({"detail": exc.errors or str(exc)}),
    )


# ---------- App factory ----------

def create_app(settings: Settings | None = None, store: SyncStore | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="DiaCare Sync API",
        description=(
            "Offline-first sync for glucose entries, reminders and daily "
            "check-ins — last-write-wins per domain, keyed by client id."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store_injected = store is not None
    app.state.sync_service = SyncService(store or InMemorySyncStore())

    app.add_exception_handler(SyncValidationError, _sync_validation_handler)

    # ---------- Middleware (order matters — outermost first) ----------

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RateLimitMiddleware, settings=settings)

    # CORS — must be the innermost middleware so it can handle preflight
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(sync.router, prefix="/api/v1")

    return app


app = create_app()
