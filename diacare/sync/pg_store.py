"""Postgres-backed domain store.

One row per ``(client_id, domain)``:

    sync_records(client_id TEXT, domain TEXT, value JSON, updated_at_ms BIGINT)
    PRIMARY KEY (client_id, domain)

``value`` is plain ``json`` so object keys come back in the order they were
written, as with the in-memory store.

``write_if_newer`` runs inside one transaction holding the client's
advisory lock, so the stamp comparison and the upserts of every touched
domain commit together or not at all.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

import asyncpg

from diacare.models.sync import Domain
from diacare.services.postgres import get_connection
from diacare.sync.acceptance import should_accept
from diacare.sync.store import Envelope, SyncStore, WriteOutcome

logger = logging.getLogger("diacare.sync.pg_store")

TABLE = "sync_records"

CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    client_id      TEXT   NOT NULL,
    domain         TEXT   NOT NULL,
    value          JSON   NOT NULL,
    updated_at_ms  BIGINT NOT NULL,
    PRIMARY KEY (client_id, domain)
)
"""


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
) -> str:
    """Build an ``INSERT ... ON CONFLICT DO UPDATE`` that replaces every non-key column.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the primary key.

    Returns:
        Parameterized SQL string.
    """
    update_columns = [c for c in columns if c not in conflict_columns]
    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({', '.join(conflict_columns)}) DO UPDATE SET {update_set}"
    )


UPSERT_SQL = build_upsert_query(
    TABLE,
    ["client_id", "domain", "value", "updated_at_ms"],
    ["client_id", "domain"],
)


def _decode(raw: Any) -> Any:
    # asyncpg returns json as text unless a type codec is registered
    return json.loads(raw) if isinstance(raw, str) else raw


class PostgresSyncStore(SyncStore):
    """Domain store persisted in Postgres through an asyncpg pool."""

    BACKEND = "postgres"

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create_schema(self) -> None:
        async with get_connection(self._pool) as conn:
            await conn.execute(CREATE_TABLE_SQL)
        logger.info("Ensured table %s exists", TABLE)

    async def get(self, client_id: str, domain: Domain) -> Envelope | None:
        async with get_connection(self._pool) as conn:
            row = await conn.fetchrow(
                f"SELECT value, updated_at_ms FROM {TABLE} WHERE client_id = $1 AND domain = $2",
                client_id,
                domain.value,
            )
        if row is None:
            return None
        return Envelope(_decode(row["value"]), int(row["updated_at_ms"]))

    async def snapshot(self, client_id: str) -> dict[Domain, Envelope | None]:
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(
                f"SELECT domain, value, updated_at_ms FROM {TABLE} WHERE client_id = $1",
                client_id,
            )
        snap: dict[Domain, Envelope | None] = {d: None for d in Domain}
        for row in rows:
            snap[Domain(row["domain"])] = Envelope(
                _decode(row["value"]), int(row["updated_at_ms"])
            )
        return snap

    async def set(
        self, client_id: str, domain: Domain, value: Any, updated_at_ms: int
    ) -> None:
        async with get_connection(self._pool, lock_client_id=client_id) as conn:
            await conn.execute(
                UPSERT_SQL, client_id, domain.value, json.dumps(value), updated_at_ms
            )

    async def delete(self, client_id: str) -> bool:
        async with get_connection(self._pool, lock_client_id=client_id) as conn:
            result = await conn.execute(
                f"DELETE FROM {TABLE} WHERE client_id = $1", client_id
            )
        return result != "DELETE 0"

    async def partition_sizes(self) -> dict[Domain, int]:
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(
                f"SELECT domain, COUNT(*) AS n FROM {TABLE} GROUP BY domain"
            )
        sizes = {d: 0 for d in Domain}
        for row in rows:
            sizes[Domain(row["domain"])] = int(row["n"])
        return sizes

    async def write_if_newer(
        self, client_id: str, values: Mapping[Domain, Any], updated_at_ms: int
    ) -> WriteOutcome:
        domains = [d.value for d in values]
        async with get_connection(self._pool, lock_client_id=client_id) as conn:
            existing_max = await conn.fetchval(
                f"SELECT MAX(updated_at_ms) FROM {TABLE} "
                "WHERE client_id = $1 AND domain = ANY($2::text[])",
                client_id,
                domains,
            )
            if existing_max is not None:
                existing_max = int(existing_max)

            accepted = should_accept(updated_at_ms, existing_max)
            if accepted:
                await conn.executemany(
                    UPSERT_SQL,
                    [
                        (client_id, domain.value, json.dumps(value), int(updated_at_ms))
                        for domain, value in values.items()
                    ],
                )
                current = int(updated_at_ms)
            else:
                current = existing_max or 0

        logger.debug(
            "write_if_newer %s domains=%s incoming=%s existing=%s accepted=%s",
            client_id, domains, updated_at_ms, existing_max, accepted,
        )
        return WriteOutcome(accepted, current, existing_max)
