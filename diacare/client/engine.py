"""Client-side sync engine: local domain state plus last-write-wins reconciliation.

The engine owns the installation's glucose entries, reminders and daily
check-ins.  Every mutation is applied and persisted locally right away and
stamps its domain with the local clock; the UI never waits on the network.

A sync cycle:

1. Pull the whole state and per-domain stamps from the server.
2. Per domain: if the server stamp is strictly newer, adopt the server
   payload wholesale; otherwise (local newer or equal) push the local
   payload.  A push answered with ``accepted=False`` means another device
   got there first, so that domain is pulled again.
3. Only once every request of the cycle has succeeded are the adopted
   payloads and stamps committed.  A failure anywhere leaves local state
   and stamps exactly as they were; the next cycle starts over.

Resolution is per whole domain, not per record: two devices editing
different reminders between cycles keep only one device's list.

Usage::

    engine = SyncEngine(LocalStorage.in_directory(".diacare"), SyncTransport(api_url))
    engine.add_entry(112, "fasting")
    report = await engine.sync()
"""

from __future__ import annotations

import asyncio
import logging
import math
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import TypeAdapter, ValidationError

from diacare.client.storage import STORAGE_KEYS, LocalStorage
from diacare.client.transport import SyncRequestRejected, SyncTransport, SyncTransportError
from diacare.config import Settings, get_settings
from diacare.models.base import utc_now, utc_now_ms
from diacare.models.sync import (
    HABIT_KEYS,
    CheckinsByDate,
    Domain,
    GlucoseContext,
    GlucoseEntry,
    Reminder,
    ReminderType,
)

logger = logging.getLogger("diacare.client.engine")

LOCAL_ENTRY_LIMIT = 400
MAX_SNOOZE_MINUTES = 24 * 60
STREAK_LOOKBACK_DAYS = 365

# Single stamp written by earlier app versions, shared by all domains
_LEGACY_STAMP_KEY = "diacare:sync_updated_at_ms:v1"

_DOMAIN_STORAGE_KEYS: dict[Domain, str] = {
    Domain.glucose: STORAGE_KEYS["entries"],
    Domain.reminders: STORAGE_KEYS["reminders"],
    Domain.checkins: STORAGE_KEYS["checkins"],
}

_ADAPTERS: dict[Domain, TypeAdapter[Any]] = {
    Domain.glucose: TypeAdapter(list[GlucoseEntry]),
    Domain.reminders: TypeAdapter(list[Reminder]),
    Domain.checkins: TypeAdapter(CheckinsByDate),
}


def new_uid(prefix: str, now_ms: int | None = None) -> str:
    """Return an id like ``glucose_1706000000000_9f2c4ab1e07d``."""
    return f"{prefix}_{now_ms if now_ms is not None else utc_now_ms()}_{secrets.token_hex(6)}"


def clamp_time(text: str) -> str:
    """Normalize a user-typed ``H:MM`` into ``HH:MM`` within 00:00–23:59.

    Unparseable hours fall back to 09, unparseable minutes to 00.
    """
    parts = text.split(":")

    def _number(raw: str) -> float | None:
        raw = raw.strip()
        if not raw:
            return 0.0
        try:
            value = float(raw)
        except ValueError:
            return None
        return value if math.isfinite(value) else None

    hour = _number(parts[0])
    minute = _number(parts[1]) if len(parts) > 1 else 0.0
    hh = 9 if hour is None else int(min(23, max(0, hour)))
    mm = 0 if minute is None else int(min(59, max(0, minute)))
    return f"{hh:02d}:{mm:02d}"


def _iso_utc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class SyncReport:
    """Outcome of one sync cycle.

    Attributes:
        pulled:     Domains replaced by the server's payload.
        pushed:     Domains whose local payload the server accepted.
        rejected:   Domains whose push was stale (server had something newer).
        kept_local: Domains the server was newer for, but which were edited
                    locally while the cycle was in flight and so kept.
        skipped:    True when no transport is configured.
        server_updated_at_ms: Server stamps seen at the start of the cycle.
    """

    pulled: list[Domain] = field(default_factory=list)
    pushed: list[Domain] = field(default_factory=list)
    rejected: list[Domain] = field(default_factory=list)
    kept_local: list[Domain] = field(default_factory=list)
    skipped: bool = False
    server_updated_at_ms: dict[Domain, int] = field(default_factory=dict)


class SyncEngine:
    """Local state for the three domains plus reconciliation with the sync API.

    Args:
        storage:   Installation-local key-value storage.
        transport: Sync API client; ``None`` keeps the engine offline.
        clock:     Returns "now" as epoch milliseconds.
        today:     Returns the user's local calendar date.
    """

    def __init__(
        self,
        storage: LocalStorage,
        transport: SyncTransport | None = None,
        clock: Callable[[], int] = utc_now_ms,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._storage = storage
        self.transport = transport
        self._clock = clock
        self._today = today
        self._inflight: asyncio.Task[SyncReport] | None = None

        self._entries: list[GlucoseEntry] = []
        self._reminders: list[Reminder] = []
        self._checkins: dict[str, dict[str, bool]] = {}
        self._stamps: dict[Domain, int] = {d: 0 for d in Domain}
        # Bumped on every local edit; a cycle compares it to spot edits made mid-flight
        self._revisions: dict[Domain, int] = {d: 0 for d in Domain}
        self._client_id = ""
        self._hydrate()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SyncEngine":
        s = settings or get_settings()
        return cls(
            LocalStorage.in_directory(s.client_storage_dir),
            SyncTransport(s.api_base_url, timeout=s.request_timeout_seconds),
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def entries(self) -> list[GlucoseEntry]:
        return list(self._entries)

    @property
    def reminders(self) -> list[Reminder]:
        return list(self._reminders)

    @property
    def checkins_by_date(self) -> dict[str, dict[str, bool]]:
        return {day: dict(flags) for day, flags in self._checkins.items()}

    def updated_at_ms(self, domain: Domain) -> int:
        """Highest stamp produced locally or received from the server for ``domain``."""
        return self._stamps[domain]

    def latest_entry(self) -> GlucoseEntry | None:
        return self._entries[0] if self._entries else None

    def today_checkins(self) -> dict[str, bool]:
        return dict(self._checkins.get(self._today().isoformat(), {}))

    def current_streak(self, habit: str) -> int:
        """Consecutive days, ending today, on which ``habit`` was checked in."""
        self._require_habit(habit)
        today = self._today()
        streak = 0
        for offset in range(STREAK_LOOKBACK_DAYS):
            day = (today - timedelta(days=offset)).isoformat()
            if not self._checkins.get(day, {}).get(habit):
                break
            streak += 1
        return streak

    # ------------------------------------------------------------------
    # Glucose
    # ------------------------------------------------------------------

    def add_entry(
        self,
        value_mg_dl: int,
        context: GlucoseContext | str,
        note: str = "",
        created_at: datetime | None = None,
    ) -> GlucoseEntry:
        """Record a reading (newest first) and tick today's ``logGlucose`` check-in."""
        entry = GlucoseEntry(
            id=new_uid("glucose", self._clock()),
            value_mg_dl=value_mg_dl,
            context=context,
            note=note,
            created_at=_iso_utc(created_at or utc_now()),
        )
        logger.info("addEntry %s %d mg/dL (%s)", entry.id, entry.value_mg_dl, entry.context.value)

        self._entries = [entry, *self._entries][:LOCAL_ENTRY_LIMIT]
        self._commit_local(Domain.glucose)

        today = self._today().isoformat()
        self._checkins[today] = {**self._checkins.get(today, {}), "logGlucose": True}
        self._commit_local(Domain.checkins)
        return entry

    def delete_entry(self, entry_id: str) -> bool:
        remaining = [e for e in self._entries if e.id != entry_id]
        if len(remaining) == len(self._entries):
            return False
        logger.info("deleteEntry %s", entry_id)
        self._entries = remaining
        self._commit_local(Domain.glucose)
        return True

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def upsert_reminder(
        self,
        title: str,
        type: ReminderType | str,
        time: str,
        enabled: bool,
        reminder_id: str | None = None,
    ) -> Reminder:
        """Create or replace a reminder.

        Existing notification and snooze ids are carried over; disabling a
        reminder clears them.
        """
        reminder_id = reminder_id or new_uid("reminder", self._clock())
        existing = self._find_reminder(reminder_id)

        reminder = Reminder(
            id=reminder_id,
            title=title,
            type=type,
            time=clamp_time(time),
            enabled=enabled,
            notification_id=existing.notification_id if existing and enabled else None,
            snoozed_until_iso=existing.snoozed_until_iso if existing and enabled else None,
            snooze_notification_id=(
                existing.snooze_notification_id if existing and enabled else None
            ),
        )
        logger.info("upsertReminder %s %r at %s enabled=%s", reminder.id, title, reminder.time, enabled)

        if existing:
            self._reminders = [reminder if r.id == reminder_id else r for r in self._reminders]
        else:
            self._reminders = [reminder, *self._reminders]
        self._commit_local(Domain.reminders)
        return reminder

    def toggle_reminder(self, reminder_id: str, enabled: bool) -> Reminder | None:
        current = self._find_reminder(reminder_id)
        if current is None:
            return None
        return self.upsert_reminder(
            current.title, current.type, current.time, enabled, reminder_id=reminder_id
        )

    def snooze_reminder(self, reminder_id: str, minutes: int) -> Reminder | None:
        """Snooze a reminder for 1 to ``MAX_SNOOZE_MINUTES`` minutes.

        An unknown id or an out-of-range duration changes nothing and returns None.
        """
        if self._find_reminder(reminder_id) is None:
            logger.warning("snoozeReminder %s: no such reminder", reminder_id)
            return None
        if minutes <= 0 or minutes > MAX_SNOOZE_MINUTES:
            logger.warning(
                "snoozeReminder %s: %d min is outside 1-%d", reminder_id, minutes, MAX_SNOOZE_MINUTES
            )
            return None
        until = datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc) + timedelta(
            minutes=minutes
        )
        logger.info("snoozeReminder %s for %d min", reminder_id, minutes)
        return self._update_reminder(
            reminder_id, snoozed_until_iso=_iso_utc(until), snooze_notification_id=None
        )

    def clear_snooze(self, reminder_id: str) -> Reminder | None:
        logger.info("clearSnooze %s", reminder_id)
        return self._update_reminder(
            reminder_id, snoozed_until_iso=None, snooze_notification_id=None
        )

    def remove_reminder(self, reminder_id: str) -> bool:
        if self._find_reminder(reminder_id) is None:
            return False
        logger.info("removeReminder %s", reminder_id)
        self._reminders = [r for r in self._reminders if r.id != reminder_id]
        self._commit_local(Domain.reminders)
        return True

    def _find_reminder(self, reminder_id: str) -> Reminder | None:
        return next((r for r in self._reminders if r.id == reminder_id), None)

    def _update_reminder(self, reminder_id: str, **changes: Any) -> Reminder | None:
        current = self._find_reminder(reminder_id)
        if current is None:
            return None
        updated = current.model_copy(update=changes)
        self._reminders = [updated if r.id == reminder_id else r for r in self._reminders]
        self._commit_local(Domain.reminders)
        return updated

    # ------------------------------------------------------------------
    # Check-ins
    # ------------------------------------------------------------------

    def set_checkin(self, date_key: str, habit: str, value: bool) -> None:
        self._require_habit(habit)
        logger.info("setCheckin %s %s=%s", date_key, habit, value)
        self._checkins[date_key] = {**self._checkins.get(date_key, {}), habit: value}
        self._commit_local(Domain.checkins)

    @staticmethod
    def _require_habit(habit: str) -> None:
        if habit not in HABIT_KEYS:
            raise ValueError(f"Unknown habit {habit!r}; expected one of {HABIT_KEYS}")

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self) -> SyncReport:
        """Run one sync cycle, or join the one already in flight.

        Raises:
            SyncTransportError:  Network/server failure; nothing local changed.
            SyncRequestRejected: The server rejected a request as malformed.
        """
        if self._inflight is None:
            task = asyncio.get_running_loop().create_task(self._run_cycle())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        else:
            logger.debug("Sync already in flight for %s; joining it", self._client_id)
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task[SyncReport]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _run_cycle(self) -> SyncReport:
        report = SyncReport()
        if self.transport is None:
            report.skipped = True
            return report

        client_id = self._client_id
        started = dict(self._stamps)
        revisions = dict(self._revisions)
        local_values = {d: self._dump(d) for d in Domain}

        remote = await self.transport.pull_all(client_id)
        remote_values = {
            Domain.glucose: remote.state.entries,
            Domain.reminders: remote.state.reminders,
            Domain.checkins: remote.state.checkins_by_date,
        }
        adopt: dict[Domain, tuple[Any, int]] = {}

        for domain in Domain:
            server_ms = getattr(remote.domain_updated_at_ms, domain.value)
            local_ms = started[domain]
            report.server_updated_at_ms[domain] = server_ms

            if server_ms > local_ms:
                adopt[domain] = (remote_values[domain], server_ms)
                continue
            if local_ms == 0:
                continue  # nothing on either side

            result = await self.transport.push_domain(
                client_id, domain, local_ms, local_values[domain]
            )
            if result.accepted:
                report.pushed.append(domain)
                continue

            # Another device pushed between our pull and our push
            report.rejected.append(domain)
            fresh = await self.transport.pull_domain(client_id, domain)
            if fresh.updated_at_ms > local_ms:
                adopt[domain] = (fresh.value, fresh.updated_at_ms)

        # Every request succeeded: commit.
        for domain, (value, server_ms) in adopt.items():
            if self._revisions[domain] != revisions[domain]:
                logger.info(
                    "Keeping local %s: edited while sync was in flight", domain.value
                )
                report.kept_local.append(domain)
                continue
            self._apply_remote(domain, value, server_ms)
            report.pulled.append(domain)

        logger.info(
            "Sync %s: pulled=%s pushed=%s rejected=%s kept_local=%s",
            client_id,
            [d.value for d in report.pulled],
            [d.value for d in report.pushed],
            [d.value for d in report.rejected],
            [d.value for d in report.kept_local],
        )
        return report

    async def run_forever(
        self,
        interval_seconds: float | None = None,
        max_backoff_seconds: float | None = None,
        stop: asyncio.Event | None = None,
    ) -> None:
        """Sync periodically until ``stop`` is set.

        Transport failures back off exponentially (capped); a rejected
        request ends the loop since resending it cannot succeed.
        """
        settings = get_settings()
        interval = interval_seconds if interval_seconds is not None else settings.sync_interval_seconds
        max_backoff = (
            max_backoff_seconds
            if max_backoff_seconds is not None
            else settings.sync_max_backoff_seconds
        )
        stop = stop or asyncio.Event()
        failures = 0

        while not stop.is_set():
            try:
                await self.sync()
                failures = 0
                delay = interval
            except SyncTransportError as exc:
                failures += 1
                delay = min(interval * 2 ** failures, max_backoff)
                logger.warning(
                    "Sync failed (%d in a row), retrying in %.1fs: %s", failures, delay, exc
                )
            except SyncRequestRejected:
                logger.error("Sync request rejected by server; stopping sync loop")
                raise

            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _hydrate(self) -> None:
        logger.info("Hydrating local state...")
        discarded: list[Domain] = []
        self._entries = self._load_domain(Domain.glucose, [], discarded)
        self._reminders = self._load_domain(Domain.reminders, [], discarded)
        self._checkins = self._load_domain(Domain.checkins, {}, discarded)

        client_id = self._storage.get_item(STORAGE_KEYS["client_id"])
        if not client_id:
            client_id = new_uid("client", self._clock())
            self._storage.set_item(STORAGE_KEYS["client_id"], client_id)
        self._client_id = client_id

        stored = self._storage.get_json(STORAGE_KEYS["sync_stamps"], None)
        if isinstance(stored, dict):
            for domain in Domain:
                value = stored.get(domain.value)
                if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                    self._stamps[domain] = value
        else:
            legacy = self._storage.get_json(_LEGACY_STAMP_KEY, 0)
            if isinstance(legacy, int) and legacy > 0:
                self._stamps = {d: legacy for d in Domain}

        # A discarded payload no longer matches its stamp; start from 0 so the
        # next cycle adopts the server copy instead of pushing an empty one
        for domain in discarded:
            self._stamps[domain] = 0
            self._persist(domain)

        logger.info(
            "Hydrated: entries=%d reminders=%d checkinsDates=%d clientId=%s stamps=%s",
            len(self._entries),
            len(self._reminders),
            len(self._checkins),
            self._client_id,
            {d.value: s for d, s in self._stamps.items()},
        )

    def _load_domain(self, domain: Domain, fallback: Any, discarded: list[Domain]) -> Any:
        """Load one domain from storage, appending it to ``discarded`` if unreadable."""
        key = _DOMAIN_STORAGE_KEYS[domain]
        raw = self._storage.get_json(key, None)
        if raw is None:
            if self._storage.get_item(key):
                discarded.append(domain)
            return fallback
        try:
            return _ADAPTERS[domain].validate_python(raw)
        except ValidationError as exc:
            logger.error("Discarding unreadable local %s: %s", domain.value, exc)
            discarded.append(domain)
            return fallback

    def _dump(self, domain: Domain) -> Any:
        if domain is Domain.glucose:
            value: Any = self._entries
        elif domain is Domain.reminders:
            value = self._reminders
        else:
            value = self._checkins
        return _ADAPTERS[domain].dump_python(value, mode="json", by_alias=True)

    def _persist(self, domain: Domain) -> None:
        self._storage.set_json(_DOMAIN_STORAGE_KEYS[domain], self._dump(domain))
        self._storage.set_json(
            STORAGE_KEYS["sync_stamps"], {d.value: s for d, s in self._stamps.items()}
        )

    def _commit_local(self, domain: Domain) -> None:
        # Stamps never move backwards, even if the wall clock does
        self._stamps[domain] = max(self._clock(), self._stamps[domain])
        self._revisions[domain] += 1
        self._persist(domain)

    def _apply_remote(self, domain: Domain, value: Any, server_ms: int) -> None:
        parsed = _ADAPTERS[domain].validate_python(value)
        if domain is Domain.glucose:
            self._entries = list(parsed)
        elif domain is Domain.reminders:
            self._reminders = list(parsed)
        else:
            self._checkins = {day: dict(flags) for day, flags in parsed.items()}
        self._stamps[domain] = server_ms
        self._persist(domain)
        logger.info("Applied remote %s (updatedAtMs=%d)", domain.value, server_ms)
