"""Domain store: per-client, per-domain envelopes of ``(value, updatedAtMs)``.

The store is a key-value map keyed by ``(client_id, domain)``.  Handlers
never read-then-write on their own; conditional writes go through
``write_if_newer`` so the acceptance decision and the write form a single
atomic unit per client identifier.

Usage::

    store = InMemorySyncStore()
    outcome = await store.write_if_newer("device-1", {Domain.glucose: entries}, 1000)
    if outcome.accepted:
        logger.info("Stored at %d", outcome.updated_at_ms)
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping

from diacare.models.sync import Domain
from diacare.sync.acceptance import should_accept

logger = logging.getLogger("diacare.sync.store")


@dataclass(frozen=True)
class Envelope:
    """A stored domain payload and the stamp it was accepted with.

    Envelopes are immutable and always replaced as a whole, so a reader
    never sees a value paired with another write's stamp.
    """

    value: Any
    updated_at_ms: int


@dataclass(frozen=True)
class WriteOutcome:
    """Result of a conditional write.

    Attributes:
        accepted:              True if the write was applied.
        updated_at_ms:         Max stamp across the touched domains after the call.
        existing_updated_at_ms: Max stamp across the touched domains before the
                               call, or None if none of them had a record.
    """

    accepted: bool
    updated_at_ms: int
    existing_updated_at_ms: int | None


class SyncStore(ABC):
    """Abstract domain store.

    Implementations must make ``write_if_newer`` atomic per client
    identifier: no other writer for that client may interleave between the
    stamp comparison and the write.
    """

    BACKEND: ClassVar[str] = "abstract"

    @abstractmethod
    async def get(self, client_id: str, domain: Domain) -> Envelope | None:
        """Return the envelope for one partition, or None."""
        ...

    @abstractmethod
    async def set(
        self, client_id: str, domain: Domain, value: Any, updated_at_ms: int
    ) -> None:
        """Unconditionally overwrite one partition."""
        ...

    @abstractmethod
    async def delete(self, client_id: str) -> bool:
        """Drop every domain for a client.  Returns True if anything existed."""
        ...

    @abstractmethod
    async def partition_sizes(self) -> dict[Domain, int]:
        """Return the number of clients stored per domain."""
        ...

    @abstractmethod
    async def write_if_newer(
        self, client_id: str, values: Mapping[Domain, Any], updated_at_ms: int
    ) -> WriteOutcome:
        """Apply the acceptance rule to the touched domains and write them all or none.

        The decision is taken once, against the max stamp of the domains in
        ``values``; on acceptance every domain in ``values`` gets
        ``updated_at_ms``.
        """
        ...

    async def snapshot(self, client_id: str) -> dict[Domain, Envelope | None]:
        return {domain: await self.get(client_id, domain) for domain in Domain}

    async def latest_updated_at_ms(self, client_id: str) -> int:
        """Whole-state version stamp: max ``updatedAtMs`` across domains, 0 if none."""
        snap = await self.snapshot(client_id)
        return max((env.updated_at_ms for env in snap.values() if env), default=0)


class InMemorySyncStore(SyncStore):
    """Process-local store backed by one dict per domain.

    Writes for a client are serialized by a per-client lock.  Reads are
    lock-free: a dict item assignment swaps in a new ``Envelope`` in one
    step, so readers see either the old or the new envelope.
    """

    BACKEND = "memory"

    def __init__(self) -> None:
        self._records: dict[Domain, dict[str, Envelope]] = {d: {} for d in Domain}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, client_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(client_id)
            if lock is None:
                lock = self._locks[client_id] = threading.Lock()
            return lock

    async def get(self, client_id: str, domain: Domain) -> Envelope | None:
        return self._records[domain].get(client_id)

    async def set(
        self, client_id: str, domain: Domain, value: Any, updated_at_ms: int
    ) -> None:
        with self._lock_for(client_id):
            self._records[domain][client_id] = Envelope(copy.deepcopy(value), updated_at_ms)

    async def delete(self, client_id: str) -> bool:
        existed = False
        with self._lock_for(client_id):
            for partition in self._records.values():
                if partition.pop(client_id, None) is not None:
                    existed = True
        return existed

    async def partition_sizes(self) -> dict[Domain, int]:
        return {domain: len(partition) for domain, partition in self._records.items()}

    async def write_if_newer(
        self, client_id: str, values: Mapping[Domain, Any], updated_at_ms: int
    ) -> WriteOutcome:
        with self._lock_for(client_id):
            existing_max = self._max_stamp(client_id, values)
            accepted = should_accept(updated_at_ms, existing_max)
            if accepted:
                for domain, value in values.items():
                    self._records[domain][client_id] = Envelope(
                        copy.deepcopy(value), int(updated_at_ms)
                    )
            current = self._max_stamp(client_id, values) or 0

        logger.debug(
            "write_if_newer %s domains=%s incoming=%s existing=%s accepted=%s",
            client_id,
            [d.value for d in values],
            updated_at_ms,
            existing_max,
            accepted,
        )
        return WriteOutcome(accepted, current, existing_max)

    def _max_stamp(self, client_id: str, domains: Mapping[Domain, Any]) -> int | None:
        stamps = [
            self._records[d][client_id].updated_at_ms
            for d in domains
            if client_id in self._records[d]
        ]
        return max(stamps) if stamps else None
