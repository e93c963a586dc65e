"""Sync endpoints: ping, stats, whole-state and per-domain pull/push, reset.

Malformed input is rejected with 422 before the store is touched.  A stale
push is not an error: it returns 200 with ``accepted: false``.
"""

from __future__ import annotations

from typing import Annotated, Any, Union

from fastapi import APIRouter, Body

from diacare.dependencies import ClientIdPath, SyncServiceDep
from diacare.models.sync import (
    CheckinsDomainPayload,
    Domain,
    GlucoseDomainPayload,
    PingResponse,
    PullAllResponse,
    PushAllRequest,
    PushResponse,
    RemindersDomainPayload,
    ResetResponse,
    StatsResponse,
)

router = APIRouter(prefix="/sync", tags=["sync"])

DomainPayloads = Union[GlucoseDomainPayload, RemindersDomainPayload, CheckinsDomainPayload]
# The `domain` tag selects which value shape is validated
DomainPayloadBody = Annotated[DomainPayloads, Body(discriminator="domain")]


# ---------- Diagnostics ----------

@router.get("/ping", response_model=PingResponse)
async def ping(service: SyncServiceDep) -> Any:
    return service.ping()


@router.get("/{client_id}/stats", response_model=StatsResponse)
async def stats(client_id: ClientIdPath, service: SyncServiceDep) -> Any:
    return await service.stats(client_id)


# ---------- Whole-state ----------

@router.get("/{client_id}", response_model=PullAllResponse)
async def pull_all(client_id: ClientIdPath, service: SyncServiceDep) -> Any:
    return await service.pull_all(client_id)


@router.put("/{client_id}", response_model=PushResponse)
async def push_all(
    client_id: ClientIdPath, body: PushAllRequest, service: SyncServiceDep
) -> Any:
    return await service.push_all(client_id, body.updated_at_ms, body.state)


@router.delete("/{client_id}", response_model=ResetResponse)
async def reset(client_id: ClientIdPath, service: SyncServiceDep) -> Any:
    return await service.reset(client_id)


# ---------- Per-domain ----------

@router.get("/{client_id}/domains/{domain}", response_model=DomainPayloads)
async def pull_domain(
    client_id: ClientIdPath, domain: Domain, service: SyncServiceDep
) -> Any:
    return await service.pull_domain(client_id, domain)


@router.post("/{client_id}/domains", response_model=PushResponse)
async def push_domain(
    client_id: ClientIdPath, body: DomainPayloadBody, service: SyncServiceDep
) -> Any:
    return await service.push_domain(
        client_id, body.domain, body.updated_at_ms, body.value
    )
