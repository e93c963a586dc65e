"""HTTP transport for the sync API.

Wraps ``httpx.AsyncClient`` and turns each remote operation into one call.
Failures are mapped onto two exception types:

- ``SyncTransportError`` — network failure, timeout, or a non-2xx/non-422
  response.  Safe to retry on the next sync cycle.
- ``SyncRequestRejected`` — the server answered 422: the request itself
  is malformed.  Retrying the same request will not help.

Usage::

    transport = SyncTransport("https://api.example.com/api/v1")
    remote = await transport.pull_all("client_1700000000000_ab12cd")
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from diacare.models.sync import (
    Domain,
    PingResponse,
    PullAllResponse,
    PushResponse,
    ResetResponse,
    StatsResponse,
    domain_payload_adapter,
)

logger = logging.getLogger("diacare.client.transport")


class SyncClientError(Exception):
    """Base class for failed sync requests."""


class SyncTransportError(SyncClientError):
    """The request did not complete: network error, timeout or server failure."""


class SyncRequestRejected(SyncClientError):
    """The server rejected the request as invalid (HTTP 422)."""

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.detail = detail


class SyncTransport:
    """Client for the ``/sync`` endpoints.

    Args:
        base_url:    API root including the version prefix (``.../api/v1``).
        http_client: Optional pre-configured httpx client (for testing).  It
                     must already carry the API root as its ``base_url``.
        timeout:     Per-request timeout in seconds when no client is injected.
    """

    def __init__(
        self,
        base_url: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url
        self._http_client = http_client
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def ping(self) -> PingResponse:
        return _parse(PingResponse, await self._request("GET", "/sync/ping"))

    async def stats(self, client_id: str) -> StatsResponse:
        data = await self._request("GET", f"/sync/{client_id}/stats")
        return _parse(StatsResponse, data)

    async def pull_all(self, client_id: str) -> PullAllResponse:
        data = await self._request("GET", f"/sync/{client_id}")
        return _parse(PullAllResponse, data)

    async def push_all(
        self, client_id: str, updated_at_ms: int, state: dict[str, Any]
    ) -> PushResponse:
        data = await self._request(
            "PUT",
            f"/sync/{client_id}",
            json={"updatedAtMs": updated_at_ms, "state": state},
        )
        return _parse(PushResponse, data)

    async def pull_domain(self, client_id: str, domain: Domain) -> Any:
        data = await self._request("GET", f"/sync/{client_id}/domains/{domain.value}")
        return _parse(domain_payload_adapter, data)

    async def push_domain(
        self, client_id: str, domain: Domain, updated_at_ms: int, value: Any
    ) -> PushResponse:
        data = await self._request(
            "POST",
            f"/sync/{client_id}/domains",
            json={"domain": domain.value, "updatedAtMs": updated_at_ms, "value": value},
        )
        return _parse(PushResponse, data)

    async def reset(self, client_id: str) -> ResetResponse:
        data = await self._request("DELETE", f"/sync/{client_id}")
        return _parse(ResetResponse, data)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, path, json=json)
            else:
                async with httpx.AsyncClient(
                    base_url=self._base_url, timeout=self._timeout
                ) as client:
                    response = await client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.warning("Sync %s %s failed: %s", method, path, exc)
            raise SyncTransportError(f"{method} {path}: {exc}") from exc

        if response.status_code == 422:
            detail = _safe_json(response)
            logger.error("Sync %s %s rejected: %s", method, path, detail)
            raise SyncRequestRejected(f"{method} {path} rejected", detail)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("Sync %s %s returned %d", method, path, response.status_code)
            raise SyncTransportError(
                f"{method} {path}: HTTP {response.status_code}"
            ) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise SyncTransportError(f"{method} {path}: invalid JSON body") from exc


def _parse(model: Any, data: Any) -> Any:
    """Validate a response body; a shape mismatch is a server-side failure."""
    validate = getattr(model, "model_validate", None) or model.validate_python
    try:
        return validate(data)
    except ValidationError as exc:
        raise SyncTransportError(f"Unexpected response shape: {exc}") from exc


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
