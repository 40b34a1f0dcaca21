"""mtgo_sync.pipeline

Dependency-ordered sync (--mode sync_upstream).

Processing order (each stage completes before the next starts):
  1. players     new names from the identity reconciler (insert only)
  2. events      newly discovered events only; incomplete events that
                already exist are not rewritten at the event level
  3. standings   needs events + players
  4. matches     needs events + players
  5. decks       needs events + players
  6. archetypes  needs decks

A stage with nothing to do returns 0. Rows whose event, player or deck is
not on the target when the stage runs are skipped and counted; everything
else goes through the batched upsert writer. Any other error aborts the
run; re-running is safe because every write is keyed on a natural key.
"""

from __future__ import annotations

import logging
from typing import Any

import click
import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from mtgo_sync.connections import SyncContext
from mtgo_sync.diff import SyncPlan
from mtgo_sync.identity import PlayerAssignment, resolve_player_identities
from mtgo_sync.shared import RejectWriter, SyncCounters
from mtgo_sync.upsert import (
    DEFAULT_PARAM_LIMIT,
    EVENTS,
    PLAYERS,
    SPECS,
    upsert_rows,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Source queries (one per dependent entity, worklist passed as an array)
# ---------------------------------------------------------------------------

_SOURCE_QUERIES = {
    "standings": """
        SELECT event_id, rank, player, record, points, omwp, gwp, owp
        FROM standings
        WHERE event_id = ANY(%s)
        ORDER BY event_id, rank
    """,
    "matches": """
        SELECT id, event_id, round, player, opponent, record, result, isbye, games
        FROM matches
        WHERE event_id = ANY(%s)
        ORDER BY event_id, round, player
    """,
    "decks": """
        SELECT id, event_id, player, mainboard, sideboard
        FROM decks
        WHERE event_id = ANY(%s)
        ORDER BY event_id, player
    """,
    "archetypes": """
        SELECT a.id, a.deck_id, a.name, a.archetype, a.archetype_id
        FROM archetypes a
        JOIN decks d ON d.id = a.deck_id
        WHERE d.event_id = ANY(%s)
        ORDER BY a.id
    """,
}

# (row column, referenced table, referenced column); a NULL value is allowed.
REFERENCES = {
    "standings":  (("event_id", "events", "id"), ("player", "players", "name")),
    "matches":    (("event_id", "events", "id"), ("player", "players", "name")),
    "decks":      (("event_id", "events", "id"), ("player", "players", "name")),
    "archetypes": (("deck_id", "decks", "id"),),
}


# ---------------------------------------------------------------------------
# Reference checks
# ---------------------------------------------------------------------------

def existing_values(
    conn: psycopg.Connection,
    table: str,
    column: str,
    values: set[Any],
) -> set[Any]:
    """Subset of `values` present in table.column on this connection."""
    if not values:
        return set()
    rows = conn.execute(
        sql.SQL("SELECT DISTINCT {col} FROM {table} WHERE {col} = ANY(%s)").format(
            col=sql.Identifier(column), table=sql.Identifier(table)
        ),
        (list(values),),
    ).fetchall()
    if not conn.autocommit:
        conn.rollback()
    return {r[0] for r in rows}


def split_resolvable(
    conn: psycopg.Connection,
    entity: str,
    rows: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], list[tuple[dict[str, Any], str]]]:
    """Split rows into (writable, [(row, reason), ...]) against the target."""
    present: dict[str, set[Any]] = {}
    for column, table, ref_column in REFERENCES.get(entity, ()):
        wanted = {r[column] for r in rows if r[column] is not None}
        present[column] = existing_values(conn, table, ref_column, wanted)

    kept: list[dict[str, Any]] = []
    dropped: list[tuple[dict[str, Any], str]] = []
    for row in rows:
        missing = [
            f"{table}.{ref_column}={row[column]!r}"
            for column, table, ref_column in REFERENCES.get(entity, ())
            if row[column] is not None and row[column] not in present[column]
        ]
        if missing:
            dropped.append((row, "missing_reference: " + ", ".join(missing)))
        else:
            kept.append(row)
    return kept, dropped


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def sync_players(
    ctx: SyncContext,
    assignments: list[PlayerAssignment],
    counters: SyncCounters,
    param_limit: int = DEFAULT_PARAM_LIMIT,
    rejects: RejectWriter | None = None,
) -> int:
    if not assignments:
        return 0
    click.echo("Syncing players...")
    counters.players_read += len(assignments)
    for a in assignments:
        if a.synthesized:
            counters.players_synthesized += 1
            counters.warnings.append(
                f"player {a.name!r}: upstream id {a.upstream_id} -> temporary id {a.id}"
            )
    result = upsert_rows(
        ctx.target, PLAYERS, [a.as_row() for a in assignments], param_limit, rejects
    )
    counters.add_result("players", result)
    click.echo(f"Synced {result.inserted} new player(s).")
    return result.written


def sync_events(
    ctx: SyncContext,
    events: list[dict[str, Any]],
    counters: SyncCounters,
    param_limit: int = DEFAULT_PARAM_LIMIT,
    rejects: RejectWriter | None = None,
) -> int:
    if not events:
        return 0
    click.echo("Syncing events...")
    counters.events_read += len(events)
    result = upsert_rows(ctx.target, EVENTS, events, param_limit, rejects)
    counters.add_result("events", result)
    click.echo(f"Synced {result.written} event(s).")
    return result.written


def fetch_dependents(
    conn: psycopg.Connection,
    entity: str,
    event_ids: list[int],
) -> list[dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(_SOURCE_QUERIES[entity], (event_ids,))
        return cur.fetchall()


def sync_dependents(
    ctx: SyncContext,
    entity: str,
    event_ids: list[int],
    counters: SyncCounters,
    param_limit: int = DEFAULT_PARAM_LIMIT,
    rejects: RejectWriter | None = None,
) -> int:
    """Stages 3 to 6: pull `entity` rows for the worklist and upsert them."""
    if not event_ids:
        return 0
    click.echo(f"Syncing {entity}...")
    rows = fetch_dependents(ctx.upstream, entity, event_ids)
    setattr(counters, f"{entity}_read", getattr(counters, f"{entity}_read") + len(rows))
    if not rows:
        click.echo(f"No {entity} upstream for these events.")
        return 0

    rows, dropped = split_resolvable(ctx.target, entity, rows)
    for row, reason in dropped:
        log.warning("Skipped %s %s: %s", entity, SPECS[entity].natural_key(row), reason)
        if rejects is not None:
            rejects.write(entity, row, reason)
    if dropped:
        setattr(
            counters, f"{entity}_skipped",
            getattr(counters, f"{entity}_skipped") + len(dropped),
        )
        counters.warnings.append(f"{entity}: {len(dropped)} row(s) reference missing parents")

    result = upsert_rows(ctx.target, SPECS[entity], rows, param_limit, rejects)
    counters.add_result(entity, result)
    if result.skipped:
        counters.warnings.append(f"{entity}: {result.skipped} row(s) rejected by constraints")
    click.echo(
        f"Synced {result.written} {entity} "
        f"({result.inserted} new, {result.updated} updated, "
        f"{result.skipped + len(dropped)} skipped)."
    )
    return result.written


# ---------------------------------------------------------------------------
# Top-level runner
# ---------------------------------------------------------------------------

def run_sync(
    ctx: SyncContext,
    plan: SyncPlan,
    counters: SyncCounters | None = None,
    param_limit: int = DEFAULT_PARAM_LIMIT,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
) -> SyncCounters:
    """Apply a SyncPlan to the target in dependency order.

    Args:
        ctx: Context with target and an upstream (source or scratch) handle.
        plan: Worklist from diff.build_sync_plan.
        counters: Counters to fill; a fresh SyncCounters when omitted.
        param_limit: Bound on statement parameters for the writer.
        rejects: Optional sink for skipped rows.
        dry_run: Resolve identities and report, write nothing.

    Returns:
        The counters.
    """
    ctrs = counters if counters is not None else SyncCounters()
    ctrs.new_events = len(plan.new_events)
    ctrs.updated_events = len(plan.incomplete_events)

    event_ids = plan.event_ids
    if not event_ids:
        click.echo("No events to sync. Local database is up to date!")
        return ctrs

    assignments = resolve_player_identities(ctx, event_ids)
    if dry_run:
        ctrs.players_read = len(assignments)
        ctrs.players_synthesized = sum(1 for a in assignments if a.synthesized)
        ctrs.events_read = len(plan.new_events)
        click.echo(
            f"[dry-run] {len(event_ids)} event(s) and {len(assignments)} new player(s) "
            "would be synced; nothing written."
        )
        return ctrs

    sync_players(ctx, assignments, ctrs, param_limit, rejects)
    sync_events(ctx, plan.new_events, ctrs, param_limit, rejects)
    for entity in ("standings", "matches", "decks", "archetypes"):
        sync_dependents(ctx, entity, event_ids, ctrs, param_limit, rejects)
    return ctrs
