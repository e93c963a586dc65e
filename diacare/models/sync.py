"""Pydantic models for the sync protocol: domain payloads, requests and responses.

Every payload is validated here before it reaches the store.  Wire names
are camelCase (see ``DiacareBase``); stored values are the JSON-mode dump
of these models, so the store never sees Python-only types.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import Field, StrictBool, TypeAdapter

from diacare.models.base import DiacareBase

CLIENT_ID_PATTERN = r"^[a-zA-Z0-9_\-:.]{6,120}$"

UpdatedAtMs = Annotated[int, Field(ge=0, strict=True)]


# ---------- Enums ----------

class Domain(str, Enum):
    glucose = "glucose"
    reminders = "reminders"
    checkins = "checkins"


class GlucoseContext(str, Enum):
    fasting = "fasting"
    before_meal = "beforeMeal"
    after_meal = "afterMeal"
    bedtime = "bedtime"
    other = "other"


class ReminderType(str, Enum):
    glucose = "glucose"
    meds = "meds"
    hydrate = "hydrate"
    walk = "walk"
    custom = "custom"


HabitKey = Literal["logGlucose", "move", "hydrate", "noSugaryDrink"]
HABIT_KEYS: tuple[str, ...] = ("logGlucose", "move", "hydrate", "noSugaryDrink")


# ---------- Domain records ----------

class GlucoseEntry(DiacareBase):
    id: str
    value_mg_dl: int = Field(gt=0, strict=True)
    context: GlucoseContext
    note: str
    created_at: str  # ISO-8601


class Reminder(DiacareBase):
    id: str
    title: str
    type: ReminderType
    time: str  # HH:MM, clamped client-side
    enabled: StrictBool
    notification_id: str | None = None
    snoozed_until_iso: str | None = None
    snooze_notification_id: str | None = None


# Closed set of flags: unknown habit names fail validation, absent flags stay absent.
CheckinRecord = dict[HabitKey, StrictBool]
CheckinsByDate = dict[str, CheckinRecord]

GlucoseEntries = list[GlucoseEntry]
Reminders = list[Reminder]


class SyncState(DiacareBase):
    """The whole-state aggregate of all three domains."""

    entries: GlucoseEntries
    reminders: Reminders
    checkins_by_date: CheckinsByDate


# ---------- Tagged per-domain payloads ----------

class GlucoseDomainPayload(DiacareBase):
    domain: Literal["glucose"] = "glucose"
    updated_at_ms: UpdatedAtMs
    value: GlucoseEntries


class RemindersDomainPayload(DiacareBase):
    domain: Literal["reminders"] = "reminders"
    updated_at_ms: UpdatedAtMs
    value: Reminders


class CheckinsDomainPayload(DiacareBase):
    domain: Literal["checkins"] = "checkins"
    updated_at_ms: UpdatedAtMs
    value: CheckinsByDate


DomainPayload = Annotated[
    Union[GlucoseDomainPayload, RemindersDomainPayload, CheckinsDomainPayload],
    Field(discriminator="domain"),
]

_PAYLOAD_TYPES: dict[Domain, type[DiacareBase]] = {
    Domain.glucose: GlucoseDomainPayload,
    Domain.reminders: RemindersDomainPayload,
    Domain.checkins: CheckinsDomainPayload,
}

domain_payload_adapter: TypeAdapter[Any] = TypeAdapter(DomainPayload)


def empty_value(domain: Domain) -> Any:
    """Return the default payload for a domain with no stored record."""
    return {} if domain is Domain.checkins else []


def build_domain_payload(domain: Domain, value: Any, updated_at_ms: int) -> Any:
    """Build the tagged payload model for ``domain`` (validates ``value``)."""
    model = _PAYLOAD_TYPES[domain]
    return model.model_validate({"value": value, "updatedAtMs": updated_at_ms})


# ---------- Requests ----------

class PushAllRequest(DiacareBase):
    updated_at_ms: UpdatedAtMs
    state: SyncState


# ---------- Responses ----------

class PingResponse(DiacareBase):
    ok: bool = True
    now_iso: str


class DomainTimestamps(DiacareBase):
    glucose: int = 0
    reminders: int = 0
    checkins: int = 0


class DomainCounts(DiacareBase):
    glucose: int = 0
    reminders: int = 0
    checkins: int = 0


class StatsResponse(DiacareBase):
    has_record: bool
    updated_at_ms: int
    glucose_updated_at_ms: int
    reminders_updated_at_ms: int
    checkins_updated_at_ms: int
    entries: int
    reminders: int
    checkins_dates: int
    db_size: DomainCounts  # clients stored per domain partition


class PullAllResponse(DiacareBase):
    state: SyncState
    updated_at_ms: int
    domain_updated_at_ms: DomainTimestamps


class PushResponse(DiacareBase):
    accepted: bool
    updated_at_ms: int


class ResetResponse(DiacareBase):
    ok: bool = True
    existed: bool
