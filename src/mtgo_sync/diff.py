"""mtgo_sync.diff

Decides which events need syncing.

  new events:        present upstream, absent on the target (one full scan
                     of target event ids, excluded upstream with = ANY).
  incomplete events: present on the target with players > 0 but without
                     standings OR without matches, capped at the
                     `window` newest such events. Decks are not
                     required; some event kinds never carry them.

Nothing here writes; callers get a SyncPlan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import psycopg
from psycopg.rows import dict_row

from mtgo_sync.connections import SyncContext

DEFAULT_RECENT_WINDOW = 100

EVENT_COLUMNS = "id, name, date, format, kind, rounds, players"


@dataclass
class SyncPlan:
    new_events: list[dict[str, Any]] = field(default_factory=list)
    incomplete_events: list[dict[str, Any]] = field(default_factory=list)

    @property
    def new_event_ids(self) -> list[int]:
        return [e["id"] for e in self.new_events]

    @property
    def incomplete_event_ids(self) -> list[int]:
        return [e["id"] for e in self.incomplete_events]

    @property
    def event_ids(self) -> list[int]:
        """New ids then incomplete ids, each once, order kept."""
        return list(dict.fromkeys(self.new_event_ids + self.incomplete_event_ids))

    @property
    def is_empty(self) -> bool:
        return not self.new_events and not self.incomplete_events


# ---------------------------------------------------------------------------
# Target-side checks
# ---------------------------------------------------------------------------

def get_local_event_ids(conn: psycopg.Connection) -> set[int]:
    rows = conn.execute("SELECT id FROM events").fetchall()
    return {r[0] for r in rows}


def get_incomplete_events(
    conn: psycopg.Connection,
    window: int = DEFAULT_RECENT_WINDOW,
) -> list[dict[str, Any]]:
    """Newest `window` target events that declare players but lack standings or matches."""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT e.id, e.name, e.date
            FROM events e
            WHERE e.players > 0
              AND (
                NOT EXISTS (SELECT 1 FROM standings s WHERE s.event_id = e.id)
                OR NOT EXISTS (SELECT 1 FROM matches m WHERE m.event_id = e.id)
              )
            ORDER BY e.date DESC, e.id DESC
            LIMIT %s
            """,
            (window,),
        )
        return cur.fetchall()


def get_recent_events(conn: psycopg.Connection, limit: int = 10) -> list[dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {EVENT_COLUMNS} FROM events ORDER BY date DESC, id DESC LIMIT %s",
            (limit,),
        )
        return cur.fetchall()


# ---------------------------------------------------------------------------
# Source-side checks
# ---------------------------------------------------------------------------

def get_upstream_events(
    conn: psycopg.Connection,
    exclude_ids: set[int],
) -> list[dict[str, Any]]:
    """Full event rows upstream whose id is not in exclude_ids, newest first."""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {EVENT_COLUMNS}
            FROM events
            WHERE NOT (id = ANY(%s))
            ORDER BY date DESC, id DESC
            """,
            (sorted(exclude_ids),),
        )
        return cur.fetchall()


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

def build_sync_plan(ctx: SyncContext, window: int = DEFAULT_RECENT_WINDOW) -> SyncPlan:
    local_ids = get_local_event_ids(ctx.target)
    incomplete = get_incomplete_events(ctx.target, window)
    # Release the read snapshot; the writer opens its own transactions.
    ctx.target.rollback()
    new_events = get_upstream_events(ctx.upstream, local_ids)
    return SyncPlan(new_events=new_events, incomplete_events=incomplete)


def format_event_preview(events: list[dict[str, Any]], limit: int = 5) -> list[str]:
    lines = [
        f"  {idx}. [{e['id']}] {e['name']} ({e['date']})"
        for idx, e in enumerate(events[:limit], start=1)
    ]
    if len(events) > limit:
        lines.append(f"  ... and {len(events) - limit} more event(s)")
    return lines
