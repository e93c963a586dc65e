"""Tests for the httpx sync transport and its error mapping."""

from __future__ import annotations

import json

import httpx
import pytest

from diacare.client.transport import SyncRequestRejected, SyncTransport, SyncTransportError
from diacare.models.sync import Domain, GlucoseDomainPayload


def _transport(handler) -> SyncTransport:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://sync.test/api/v1"
    )
    return SyncTransport(http_client=client)


class TestRequests:
    @pytest.mark.asyncio
    async def test_push_domain_sends_tagged_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"accepted": True, "updatedAtMs": 9})

        transport = _transport(handler)
        result = await transport.push_domain("device-1", Domain.checkins, 9, {"d": {"move": True}})

        assert result.accepted is True
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/v1/sync/device-1/domains"
        assert json.loads(seen[0].content) == {
            "domain": "checkins", "updatedAtMs": 9, "value": {"d": {"move": True}},
        }

    @pytest.mark.asyncio
    async def test_pull_domain_parses_discriminated_payload(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v1/sync/device-1/domains/glucose"
            return httpx.Response(200, json={"domain": "glucose", "updatedAtMs": 3, "value": []})

        payload = await _transport(handler).pull_domain("device-1", Domain.glucose)
        assert isinstance(payload, GlucoseDomainPayload)
        assert payload.updated_at_ms == 3

    @pytest.mark.asyncio
    async def test_push_all_body(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"accepted": False, "updatedAtMs": 50})

        state = {"entries": [], "reminders": [], "checkinsByDate": {}}
        result = await _transport(handler).push_all("device-1", 10, state)

        assert result.accepted is False
        assert result.updated_at_ms == 50
        assert bodies == [{"updatedAtMs": 10, "state": state}]


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_422_is_rejection(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"detail": [{"msg": "bad"}]})

        with pytest.raises(SyncRequestRejected) as excinfo:
            await _transport(handler).reset("device-1")
        assert excinfo.value.detail == {"detail": [{"msg": "bad"}]}

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        with pytest.raises(SyncTransportError):
            await _transport(handler).ping()

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SyncTransportError):
            await _transport(handler).pull_all("device-1")

    @pytest.mark.asyncio
    async def test_unexpected_shape_is_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"accepted": "maybe"})

        with pytest.raises(SyncTransportError):
            await _transport(handler).push_domain("device-1", Domain.glucose, 1, [])

    @pytest.mark.asyncio
    async def test_rejection_is_not_a_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, text="nope")

        with pytest.raises(SyncRequestRejected) as excinfo:
            await _transport(handler).stats("device-1")
        assert not isinstance(excinfo.value, SyncTransportError)
        assert excinfo.value.detail == "nope"
