"""Shared fixtures for the client-side sync tests."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import FastAPI

from diacare.client.engine import SyncEngine
from diacare.client.storage import LocalStorage
from diacare.client.transport import SyncTransport
from diacare.config import Settings
from diacare.main import create_app
from diacare.models.sync import DomainTimestamps, PullAllResponse, PushResponse, SyncState
from diacare.sync.store import InMemorySyncStore

TODAY = date(2024, 1, 23)


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int = 1_706_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


def empty_pull(**stamps: int) -> PullAllResponse:
    return PullAllResponse(
        state=SyncState(entries=[], reminders=[], checkins_by_date={}),
        updated_at_ms=max(stamps.values(), default=0),
        domain_updated_at_ms=DomainTimestamps(**stamps),
    )


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> LocalStorage:
    return LocalStorage()


@pytest.fixture
def mock_transport() -> MagicMock:
    """Transport whose server is empty and accepts every push."""
    transport = MagicMock(spec=SyncTransport)
    transport.pull_all = AsyncMock(return_value=empty_pull())
    transport.push_domain = AsyncMock(
        side_effect=lambda client_id, domain, stamp, value: PushResponse(
            accepted=True, updated_at_ms=stamp
        )
    )
    transport.pull_domain = AsyncMock()
    return transport


@pytest.fixture
def engine(storage: LocalStorage, clock: FakeClock) -> SyncEngine:
    """Offline engine (no transport)."""
    return SyncEngine(storage, clock=clock, today=lambda: TODAY)


# ---------------------------------------------------------------------------
# In-process server
# ---------------------------------------------------------------------------


@pytest.fixture
def server_store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def server_app(server_store: InMemorySyncStore) -> FastAPI:
    settings = Settings(rate_limit_per_minute=10_000, database_url=None)
    return create_app(settings=settings, store=server_store)


def asgi_client(app: FastAPI) -> httpx.AsyncClient:
    """httpx client that calls ``app`` in-process under the v1 prefix."""
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test/api/v1"
    )
