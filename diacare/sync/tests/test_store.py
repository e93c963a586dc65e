"""Tests for the in-memory domain store."""

from __future__ import annotations

import asyncio
import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from diacare.models.sync import Domain
from diacare.sync.store import Envelope, InMemorySyncStore

CLIENT = "store-client"


class TestBasicOperations:
    @pytest.mark.asyncio
    async def test_missing_partition_is_none(self, store: InMemorySyncStore) -> None:
        assert await store.get(CLIENT, Domain.glucose) is None
        assert await store.latest_updated_at_ms(CLIENT) == 0

    @pytest.mark.asyncio
    async def test_set_overwrites_unconditionally(self, store: InMemorySyncStore) -> None:
        await store.set(CLIENT, Domain.reminders, [{"id": "a"}], 500)
        await store.set(CLIENT, Domain.reminders, [], 100)
        assert await store.get(CLIENT, Domain.reminders) == Envelope([], 100)

    @pytest.mark.asyncio
    async def test_set_copies_value(self, store: InMemorySyncStore) -> None:
        value = [{"id": "a"}]
        await store.set(CLIENT, Domain.glucose, value, 1)
        value.append({"id": "b"})
        env = await store.get(CLIENT, Domain.glucose)
        assert env is not None and env.value == [{"id": "a"}]

    @pytest.mark.asyncio
    async def test_latest_is_max_across_domains(self, store: InMemorySyncStore) -> None:
        await store.set(CLIENT, Domain.glucose, [], 300)
        await store.set(CLIENT, Domain.checkins, {}, 700)
        assert await store.latest_updated_at_ms(CLIENT) == 700

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self, store: InMemorySyncStore) -> None:
        assert await store.delete(CLIENT) is False
        await store.set(CLIENT, Domain.checkins, {}, 1)
        assert await store.delete(CLIENT) is True
        assert await store.get(CLIENT, Domain.checkins) is None

    @pytest.mark.asyncio
    async def test_partition_sizes_count_clients(self, store: InMemorySyncStore) -> None:
        await store.set("client-a", Domain.glucose, [], 1)
        await store.set("client-b", Domain.glucose, [], 1)
        await store.set("client-b", Domain.reminders, [], 1)
        sizes = await store.partition_sizes()
        assert sizes == {Domain.glucose: 2, Domain.reminders: 1, Domain.checkins: 0}


class TestWriteIfNewer:
    @pytest.mark.asyncio
    async def test_first_write_accepted(self, store: InMemorySyncStore) -> None:
        outcome = await store.write_if_newer(CLIENT, {Domain.glucose: [1]}, 1000)
        assert outcome.accepted
        assert outcome.updated_at_ms == 1000
        assert outcome.existing_updated_at_ms is None

    @pytest.mark.asyncio
    async def test_stale_write_leaves_envelope(self, store: InMemorySyncStore) -> None:
        await store.write_if_newer(CLIENT, {Domain.glucose: [1]}, 1000)
        outcome = await store.write_if_newer(CLIENT, {Domain.glucose: [2]}, 999)
        assert not outcome.accepted
        assert outcome.updated_at_ms == 1000
        assert await store.get(CLIENT, Domain.glucose) == Envelope([1], 1000)

    @pytest.mark.asyncio
    async def test_multi_domain_decision_uses_max(self, store: InMemorySyncStore) -> None:
        await store.set(CLIENT, Domain.reminders, ["r"], 2000)
        values = {Domain.glucose: ["g"], Domain.reminders: [], Domain.checkins: {}}
        outcome = await store.write_if_newer(CLIENT, values, 1500)
        assert not outcome.accepted
        assert await store.get(CLIENT, Domain.glucose) is None
        assert await store.get(CLIENT, Domain.checkins) is None

    @pytest.mark.asyncio
    async def test_domains_untouched_by_write_are_ignored(self, store: InMemorySyncStore) -> None:
        await store.set(CLIENT, Domain.reminders, ["r"], 5000)
        outcome = await store.write_if_newer(CLIENT, {Domain.glucose: ["g"]}, 10)
        assert outcome.accepted
        assert outcome.updated_at_ms == 10


class TestConcurrency:
    def test_threads_racing_on_one_client_end_at_max(self, store: InMemorySyncStore) -> None:
        stamps = list(range(1, 201))
        random.Random(7).shuffle(stamps)

        def push(stamp: int) -> bool:
            outcome = asyncio.run(
                store.write_if_newer(CLIENT, {Domain.glucose: [stamp]}, stamp)
            )
            return outcome.accepted

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(push, stamps))

        env = asyncio.run(store.get(CLIENT, Domain.glucose))
        assert env == Envelope([200], 200)
        assert any(results)

    @pytest.mark.asyncio
    async def test_gathered_writes_keep_value_and_stamp_paired(
        self, store: InMemorySyncStore
    ) -> None:
        stamps = list(range(50))
        random.Random(11).shuffle(stamps)
        await asyncio.gather(
            *(store.write_if_newer(CLIENT, {Domain.checkins: {"s": s}}, s) for s in stamps)
        )
        env = await store.get(CLIENT, Domain.checkins)
        assert env is not None
        assert env.updated_at_ms == 49
        assert env.value == {"s": 49}
