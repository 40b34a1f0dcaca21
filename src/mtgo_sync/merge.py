"""mtgo_sync.merge

Insert-only merge from a restored snapshot (--mode merge_dump).

The scratch database and the target are separate connections, so every
"not already on the target" check is a two-step join done client side:
read the target's natural keys into a set, read the snapshot rows, and
keep the rows whose key is absent. Stage order is the same as the sync
pipeline; each stage re-reads the target so rows inserted by an earlier
stage count as existing references.

Per entity:
  players     name and id both absent on the target
  events      id absent
  standings   (event_id, player) absent; event and player on the target
  matches     (event_id, round, player) absent; event and player on the target
  decks       id absent; event and player on the target
  archetypes  id absent; deck on the target (or no deck)

Rows that fail a reference check are skipped and counted, never written to
the rejects file. Existing target rows are never updated and no synthetic
player ids are issued in this mode.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import click
import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from mtgo_sync.connections import SyncContext
from mtgo_sync.pipeline import split_resolvable
from mtgo_sync.shared import ENTITY_ORDER, RejectWriter, SyncCounters
from mtgo_sync.upsert import DEFAULT_PARAM_LIMIT, SPECS, EntitySpec, upsert_rows

log = logging.getLogger(__name__)

_ORDER_BY = {
    "players": ("id",),
    "events": ("id",),
    "standings": ("event_id", "rank"),
    "matches": ("event_id", "round", "player"),
    "decks": ("id",),
    "archetypes": ("id",),
}


def fetch_snapshot_rows(conn: psycopg.Connection, spec: EntitySpec) -> list[dict[str, Any]]:
    query = sql.SQL("SELECT {columns} FROM {table} ORDER BY {order}").format(
        columns=sql.SQL(", ").join(sql.Identifier(c) for c in spec.columns),
        table=sql.Identifier(spec.table),
        order=sql.SQL(", ").join(sql.Identifier(c) for c in _ORDER_BY[spec.entity]),
    )
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query)
        return cur.fetchall()


def target_key_set(
    conn: psycopg.Connection,
    table: str,
    columns: Iterable[str],
) -> set[tuple]:
    rows = conn.execute(
        sql.SQL("SELECT {columns} FROM {table}").format(
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            table=sql.Identifier(table),
        )
    ).fetchall()
    if not conn.autocommit:
        conn.rollback()
    return {tuple(r) for r in rows}


def absent_rows(
    conn: psycopg.Connection,
    spec: EntitySpec,
    rows: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], int]:
    """Rows whose natural key is not on the target, plus the count that is."""
    keys = target_key_set(conn, spec.table, spec.conflict_columns)
    fresh = [r for r in rows if spec.natural_key(r) not in keys]
    return fresh, len(rows) - len(fresh)


def merge_entity(
    ctx: SyncContext,
    entity: str,
    counters: SyncCounters,
    param_limit: int = DEFAULT_PARAM_LIMIT,
    rejects: RejectWriter | None = None,
) -> int:
    spec = SPECS[entity]
    click.echo(f"Merging {entity}...")
    rows = fetch_snapshot_rows(ctx.upstream, spec)
    setattr(counters, f"{entity}_read", getattr(counters, f"{entity}_read") + len(rows))
    if not rows:
        click.echo(f"No {entity} in snapshot.")
        return 0

    fresh, present = absent_rows(ctx.target, spec, rows)
    kept = fresh
    if entity == "players":
        # A name-new player whose id is taken locally is left out.
        taken = {k[0] for k in target_key_set(ctx.target, "players", ("id",))}
        kept = [r for r in kept if r["id"] not in taken]
    kept, dropped = split_resolvable(ctx.target, entity, kept)
    for row, reason in dropped:
        log.debug("Merge skipped %s %s: %s", entity, spec.natural_key(row), reason)

    filtered = len(fresh) - len(kept)
    setattr(counters, f"{entity}_skipped", getattr(counters, f"{entity}_skipped") + filtered)

    result = upsert_rows(ctx.target, spec.insert_only(), kept, param_limit, rejects)
    counters.add_result(entity, result)
    click.echo(
        f"Merged {result.inserted} {entity} "
        f"({present} already present, {filtered + result.skipped} skipped)."
    )
    return result.inserted


def run_merge(
    ctx: SyncContext,
    counters: SyncCounters | None = None,
    param_limit: int = DEFAULT_PARAM_LIMIT,
    rejects: RejectWriter | None = None,
    tables: Iterable[str] | None = None,
) -> SyncCounters:
    """Merge the snapshot behind ctx.scratch into ctx.target.

    Args:
        ctx: Context whose scratch connection holds the restored dump.
        counters: Counters to fill; a fresh SyncCounters when omitted.
        param_limit: Bound on statement parameters for the writer.
        rejects: Optional sink for rows the database itself rejects.
        tables: Tables present in the snapshot; entities whose table is
            missing are skipped. All entities are attempted when omitted.

    Returns:
        The counters; new_events is the number of events inserted.
    """
    ctrs = counters if counters is not None else SyncCounters()
    available = set(tables) if tables is not None else None
    for entity in ENTITY_ORDER:
        if available is not None and SPECS[entity].table not in available:
            click.echo(f"Snapshot has no {SPECS[entity].table} table; skipping {entity}.")
            ctrs.warnings.append(f"{entity}: table missing from snapshot")
            continue
        merge_entity(ctx, entity, ctrs, param_limit, rejects)
    ctrs.new_events = ctrs.events_inserted
    return ctrs
