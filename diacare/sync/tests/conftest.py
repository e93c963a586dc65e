"""Shared fixtures and sample payloads for sync service tests."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from diacare.config import Settings
from diacare.main import create_app
from diacare.sync.service import SyncService
from diacare.sync.store import InMemorySyncStore

# Canonical test client ids
DEVICE_1 = "device-1"
DEVICE_2 = "device-2"
DEVICE_3 = "device-3"


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def make_entry(i: int = 1, value: int = 110, context: str = "fasting") -> dict[str, Any]:
    return {
        "id": f"glucose_{i}",
        "valueMgDl": value,
        "context": context,
        "note": "",
        "createdAt": f"2024-01-23T08:{i % 60:02d}:00.000Z",
    }


def make_reminder(i: int = 1, enabled: bool = True) -> dict[str, Any]:
    return {
        "id": f"reminder_{i}",
        "title": "Check glucose",
        "type": "glucose",
        "time": "09:00",
        "enabled": enabled,
        "notificationId": None,
        "snoozedUntilIso": None,
        "snoozeNotificationId": None,
    }


def make_state(
    entries: list[dict[str, Any]] | None = None,
    reminders: list[dict[str, Any]] | None = None,
    checkins: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "entries": entries or [],
        "reminders": reminders or [],
        "checkinsByDate": checkins or {},
    }


# ---------------------------------------------------------------------------
# Service / app fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def service(store: InMemorySyncStore) -> SyncService:
    return SyncService(store)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(rate_limit_per_minute=10_000, database_url=None)


@pytest.fixture
def app(test_settings: Settings, store: InMemorySyncStore) -> FastAPI:
    return create_app(settings=test_settings, store=store)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    with TestClient(app) as c:
        yield c
