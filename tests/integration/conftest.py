"""Integration test fixtures.

Two databases on one ephemeral PostgreSQL process provided by
pytest-postgresql: `upstream` plays the live source and `target` the local
copy. Both get migrations/0001_tournament_schema.sql.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from mtgo_sync.connections import open_sync_context

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
SCHEMA = PROJECT_ROOT / "migrations" / "0001_tournament_schema.sql"

# ---------------------------------------------------------------------------
# pytest-postgresql fixtures
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
target_pg = factories.postgresql("postgresql_proc", dbname="mtgo_target")
upstream_pg = factories.postgresql("postgresql_proc", dbname="mtgo_upstream")


def _dsn(info, dbname: str | None = None) -> str:
    return (
        f"host={info.host} "
        f"port={info.port} "
        f"dbname={dbname or info.dbname} "
        f"user={info.user} "
        f"password={info.password or ''}"
    )


def _apply_schema(dsn: str) -> psycopg.Connection:
    conn = psycopg.connect(dsn, autocommit=True)
    conn.execute(SCHEMA.read_text(encoding="utf-8"))
    return conn


@pytest.fixture(scope="function")
def target_db(target_pg):
    """(autocommit connection, dsn) for the target, schema applied."""
    dsn = _dsn(target_pg.info)
    conn = _apply_schema(dsn)
    try:
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture(scope="function")
def upstream_db(upstream_pg):
    """(autocommit connection, dsn) for the upstream, schema applied."""
    dsn = _dsn(upstream_pg.info)
    conn = _apply_schema(dsn)
    try:
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture(scope="function")
def sync_ctx(target_db, upstream_db):
    with open_sync_context(target_db[1], upstream_db[1]) as ctx:
        yield ctx


@pytest.fixture(scope="function")
def admin_dsn(target_pg):
    return _dsn(target_pg.info, dbname="postgres")


@pytest.fixture(scope="session")
def pg_bin_dir(postgresql_proc):
    """Directory of the server's client binaries (psql, pg_dump, pg_restore)."""
    return Path(postgresql_proc.executable).parent


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

BASE_DATE = datetime(2026, 9, 1, 12, 0)


def add_event(conn, eid, players=8, days=0, name=None, fmt="Modern", kind="challenge", rounds=3):
    conn.execute(
        "INSERT INTO events (id, name, date, format, kind, rounds, players) "
        "VALUES (%s, %s, %s, %s, %s, %s, %s)",
        (eid, name or f"{fmt} Challenge {eid}", BASE_DATE + timedelta(days=days),
         fmt, kind, rounds, players),
    )


def add_player(conn, pid, name):
    conn.execute("INSERT INTO players (id, name) VALUES (%s, %s)", (pid, name))


def add_standing(conn, event_id, rank, player, points=9):
    conn.execute(
        "INSERT INTO standings (event_id, rank, player, record, points, omwp, gwp, owp) "
        "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
        (event_id, rank, player, "3-0-0", points, 0.61, 0.75, 0.58),
    )


def add_match(conn, mid, event_id, rnd, player, opponent, result="win"):
    conn.execute(
        "INSERT INTO matches (id, event_id, round, player, opponent, record, result, isbye, games) "
        "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)",
        (mid, event_id, rnd, player, opponent, "2-1-0", result, False,
         json.dumps([{"result": "win"}, {"result": "loss"}, {"result": "win"}])),
    )


def add_deck(conn, did, event_id, player):
    conn.execute(
        "INSERT INTO decks (id, event_id, player, mainboard, sideboard) "
        "VALUES (%s, %s, %s, %s::jsonb, %s::jsonb)",
        (did, event_id, player,
         json.dumps([{"name": "Lightning Bolt", "count": 4}]),
         json.dumps([{"name": "Blood Moon", "count": 2}])),
    )


def add_archetype(conn, aid, deck_id, archetype="Burn"):
    conn.execute(
        "INSERT INTO archetypes (id, deck_id, name, archetype, archetype_id) "
        "VALUES (%s, %s, %s, %s, %s)",
        (aid, deck_id, archetype, archetype, 17),
    )


def count(conn, table, where="TRUE", params=()):
    return conn.execute(f"SELECT count(*) FROM {table} WHERE {where}", params).fetchone()[0]
