"""Server-side sync infrastructure for DiaCare.

Modules:
    acceptance — Last-write-wins acceptance rule and collection caps
    store      — Domain store interface and the in-memory implementation
    pg_store   — Postgres-backed domain store (asyncpg)
    service    — Request handlers: ping, stats, pull/push (whole-state and per-domain), reset
"""
