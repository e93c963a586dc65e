"""Remote sync request handlers, independent of the HTTP layer.

Each handler validates its input, talks to the injected ``SyncStore`` and
logs one line describing what it did.  Two kinds of "no" are kept apart:

- ``SyncValidationError`` — malformed client id or payload.  Nothing is
  written; the caller sent bad input.
- ``accepted=False`` — the write was well-formed but older than what is
  stored.  This is the normal outcome of concurrent devices, not an error.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, ValidationError

from diacare.models.base import utc_now
from diacare.models.sync import (
    CLIENT_ID_PATTERN,
    Domain,
    DomainCounts,
    DomainTimestamps,
    PingResponse,
    PullAllResponse,
    PushResponse,
    ResetResponse,
    StatsResponse,
    SyncState,
    build_domain_payload,
    empty_value,
)
from diacare.sync.acceptance import clamp_domain, clamp_state, is_valid_timestamp
from diacare.sync.store import Envelope, SyncStore

logger = logging.getLogger("diacare.sync.service")

_CLIENT_ID_RE = re.compile(CLIENT_ID_PATTERN)


class SyncValidationError(ValueError):
    """Raised when a request fails validation before touching the store."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


def validate_client_id(client_id: Any) -> str:
    if not isinstance(client_id, str) or not _CLIENT_ID_RE.fullmatch(client_id):
        raise SyncValidationError(f"Invalid clientId: {client_id!r}")
    return client_id


def validate_updated_at_ms(updated_at_ms: Any) -> int:
    if not is_valid_timestamp(updated_at_ms):
        raise SyncValidationError(
            f"updatedAtMs must be a non-negative integer, got {updated_at_ms!r}"
        )
    return int(updated_at_ms)


def _stamp(envelope: Envelope | None) -> int:
    return envelope.updated_at_ms if envelope else 0


def _value(envelope: Envelope | None, domain: Domain) -> Any:
    return envelope.value if envelope else empty_value(domain)


class SyncService:
    """Handlers for the sync surface: ping, stats, pull/push, reset.

    Usage::

        service = SyncService(InMemorySyncStore())
        result = await service.push_domain("device-2", Domain.checkins, 2000, {"2024-01-23": {"move": True}})
        assert result.accepted
    """

    def __init__(self, store: SyncStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def ping(self) -> PingResponse:
        now_iso = utc_now().isoformat().replace("+00:00", "Z")
        logger.info("sync.ping nowIso=%s", now_iso)
        return PingResponse(ok=True, now_iso=now_iso)

    async def stats(self, client_id: str) -> StatsResponse:
        validate_client_id(client_id)
        snap = await self.store.snapshot(client_id)
        sizes = await self.store.partition_sizes()

        glucose = snap[Domain.glucose]
        reminders = snap[Domain.reminders]
        checkins = snap[Domain.checkins]

        result = StatsResponse(
            has_record=any(env is not None for env in snap.values()),
            updated_at_ms=max(_stamp(glucose), _stamp(reminders), _stamp(checkins)),
            glucose_updated_at_ms=_stamp(glucose),
            reminders_updated_at_ms=_stamp(reminders),
            checkins_updated_at_ms=_stamp(checkins),
            entries=len(_value(glucose, Domain.glucose)),
            reminders=len(_value(reminders, Domain.reminders)),
            checkins_dates=len(_value(checkins, Domain.checkins)),
            db_size=DomainCounts(**{d.value: n for d, n in sizes.items()}),
        )
        logger.info("sync.stats %s %s", client_id, result.model_dump(by_alias=True))
        return result

    async def pull_all(self, client_id: str) -> PullAllResponse:
        validate_client_id(client_id)
        snap = await self.store.snapshot(client_id)

        state = SyncState.model_validate(
            {
                "entries": _value(snap[Domain.glucose], Domain.glucose),
                "reminders": _value(snap[Domain.reminders], Domain.reminders),
                "checkinsByDate": _value(snap[Domain.checkins], Domain.checkins),
            }
        )
        stamps = DomainTimestamps(**{d.value: _stamp(env) for d, env in snap.items()})
        updated_at_ms = max(stamps.glucose, stamps.reminders, stamps.checkins)

        logger.info(
            "sync.pullAll %s updatedAtMs=%d entries=%d reminders=%d checkinsDates=%d",
            client_id,
            updated_at_ms,
            len(state.entries),
            len(state.reminders),
            len(state.checkins_by_date),
        )
        return PullAllResponse(
            state=state, updated_at_ms=updated_at_ms, domain_updated_at_ms=stamps
        )

    async def pull_domain(self, client_id: str, domain: Domain | str) -> Any:
        """Return the tagged ``{domain, value, updatedAtMs}`` payload for one domain."""
        validate_client_id(client_id)
        domain = self._domain(domain)
        envelope = await self.store.get(client_id, domain)
        logger.info(
            "sync.pullDomain %s domain=%s updatedAtMs=%d",
            client_id, domain.value, _stamp(envelope),
        )
        return build_domain_payload(domain, _value(envelope, domain), _stamp(envelope))

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    async def push_all(
        self, client_id: str, updated_at_ms: int, state: SyncState | dict[str, Any]
    ) -> PushResponse:
        """Write all three domains under one combined stamp comparison.

        Either every domain is overwritten with ``updated_at_ms`` or none is.
        The same stamp is written to every domain, including domains whose
        payload did not change on the client.
        """
        validate_client_id(client_id)
        updated_at_ms = validate_updated_at_ms(updated_at_ms)
        state = self._validated(SyncState, state)
        dumped = state.model_dump(mode="json", by_alias=True)

        values = clamp_state(
            {
                Domain.glucose: dumped["entries"],
                Domain.reminders: dumped["reminders"],
                Domain.checkins: dumped["checkinsByDate"],
            }
        )
        outcome = await self.store.write_if_newer(client_id, values, updated_at_ms)

        logger.info(
            "sync.pushAll %s incomingUpdatedAtMs=%d existingUpdatedAtMs=%s accepted=%s "
            "entries=%d reminders=%d checkinsDates=%d",
            client_id,
            updated_at_ms,
            outcome.existing_updated_at_ms,
            outcome.accepted,
            len(values[Domain.glucose]),
            len(values[Domain.reminders]),
            len(values[Domain.checkins]),
        )
        return PushResponse(accepted=outcome.accepted, updated_at_ms=outcome.updated_at_ms)

    async def push_domain(
        self, client_id: str, domain: Domain | str, updated_at_ms: int, value: Any
    ) -> PushResponse:
        validate_client_id(client_id)
        domain = self._domain(domain)
        updated_at_ms = validate_updated_at_ms(updated_at_ms)
        try:
            payload = build_domain_payload(domain, value, updated_at_ms)
        except ValidationError as exc:
            raise SyncValidationError(
                f"Invalid {domain.value} payload",
                exc.errors(include_url=False, include_context=False),
            ) from exc

        stored = clamp_domain(domain, payload.model_dump(mode="json", by_alias=True)["value"])
        outcome = await self.store.write_if_newer(client_id, {domain: stored}, updated_at_ms)

        logger.info(
            "sync.pushDomain %s domain=%s incomingUpdatedAtMs=%d existingUpdatedAtMs=%s "
            "accepted=%s size=%d",
            client_id,
            domain.value,
            updated_at_ms,
            outcome.existing_updated_at_ms,
            outcome.accepted,
            len(stored),
        )
        return PushResponse(accepted=outcome.accepted, updated_at_ms=outcome.updated_at_ms)

    async def reset(self, client_id: str) -> ResetResponse:
        validate_client_id(client_id)
        existed = await self.store.delete(client_id)
        logger.info("sync.reset %s existed=%s", client_id, existed)
        return ResetResponse(ok=True, existed=existed)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _domain(domain: Domain | str) -> Domain:
        try:
            return Domain(domain)
        except ValueError as exc:
            raise SyncValidationError(f"Unknown domain: {domain!r}") from exc

    @staticmethod
    def _validated(model: type[BaseModel], data: Any) -> Any:
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise SyncValidationError(
                f"Invalid {model.__name__} payload",
                exc.errors(include_url=False, include_context=False),
            ) from exc
