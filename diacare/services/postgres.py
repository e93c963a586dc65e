"""Postgres connection pool for the persistent sync store.

Uses ``asyncpg`` directly.  Writers that must be serialized per client
identifier acquire a transaction-scoped advisory lock keyed on the client
id; the lock is released automatically when the transaction ends, even when
the client has no rows yet to lock with ``SELECT ... FOR UPDATE``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from diacare.config import Settings, get_settings

logger = logging.getLogger("diacare.db")

# Module-level connection pool — initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    if not s.database_url:
        raise RuntimeError("database_url is not configured")
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=1,
        max_size=10,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=1, max=10)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    pool: asyncpg.Pool | None = None,
    lock_client_id: str | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection inside a transaction.

    Usage::

        async with get_connection(pool, lock_client_id="device-1") as conn:
            rows = await conn.fetch("SELECT * FROM sync_records WHERE client_id = $1", "device-1")

    With ``lock_client_id`` set, the transaction first takes
    ``pg_advisory_xact_lock`` on the client id so concurrent writers for the
    same client run one after another.
    """
    pool = pool or get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if lock_client_id:
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", lock_client_id
                )
            yield conn
