"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Path, Request

from diacare.config import Settings
from diacare.models.sync import CLIENT_ID_PATTERN
from diacare.sync.service import SyncService


def get_sync_service(request: Request) -> SyncService:
    """Return the app-wide sync service.

    ``create_app`` stores it on ``app.state``; the lifespan hook swaps its
    store for the Postgres one when a database is configured.
    """
    return request.app.state.sync_service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# Annotated shortcuts for route signatures
SyncServiceDep = Annotated[SyncService, Depends(get_sync_service)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
ClientIdPath = Annotated[
    str,
    Path(
        pattern=CLIENT_ID_PATTERN,
        description="Opaque per-installation identifier partitioning all stored state.",
    ),
]
