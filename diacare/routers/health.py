"""Health check endpoint — public, no client id required."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from diacare.dependencies import AppSettings, SyncServiceDep
from diacare.models.base import utc_now

router = APIRouter(tags=["system"])
logger = logging.getLogger("diacare.health")


@router.get("/health")
async def health_check(service: SyncServiceDep, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight store probe.
    """
    store_ok = False
    try:
        await service.store.partition_sizes()
        store_ok = True
    except Exception as exc:
        logger.warning("Health check store probe failed: %s", exc)

    return {
        "status": "healthy" if store_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "store": service.store.BACKEND,
        "storeStatus": "connected" if store_ok else "unreachable",
        "timestamp": utc_now().isoformat(),
    }
