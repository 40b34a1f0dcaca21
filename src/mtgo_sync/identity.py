"""mtgo_sync.identity

Player identity reconciliation.

A player's name is the join key between upstream and target; the numeric
id is a local convenience. For every name referenced by the worklist that
the target does not know yet:

  1. the upstream id is adopted when no target player holds it;
  2. otherwise (collision, or no upstream player row) a synthetic id is
     taken by counting down from the lowest negative id on the target,
     starting at -1 when there is none;
  3. each synthetic id is logged at WARNING.

Synthetic ids are easy to find later: SELECT * FROM players WHERE id < 0.
Names already on the target are never re-assigned, so a re-run with an
unchanged target issues nothing new.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import psycopg

from mtgo_sync.connections import SyncContext

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayerAssignment:
    name: str
    id: int
    upstream_id: int | None
    synthesized: bool

    def as_row(self) -> dict[str, object]:
        return {"id": self.id, "name": self.name}


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def collect_referenced_player_names(
    conn: psycopg.Connection,
    event_ids: list[int],
) -> list[str]:
    """Distinct player names in standings, matches and decks of the events."""
    if not event_ids:
        return []
    rows = conn.execute(
        """
        SELECT player FROM standings WHERE event_id = ANY(%(ids)s)
        UNION
        SELECT player FROM matches WHERE event_id = ANY(%(ids)s)
        UNION
        SELECT player FROM decks WHERE event_id = ANY(%(ids)s)
        ORDER BY 1
        """,
        {"ids": event_ids},
    ).fetchall()
    return [r[0] for r in rows if r[0] is not None]


def get_upstream_player_ids(conn: psycopg.Connection, names: list[str]) -> dict[str, int]:
    if not names:
        return {}
    rows = conn.execute(
        "SELECT id, name FROM players WHERE name = ANY(%s)",
        (names,),
    ).fetchall()
    return {name: pid for pid, name in rows if pid is not None}


def get_local_players(conn: psycopg.Connection) -> dict[str, int]:
    rows = conn.execute("SELECT id, name FROM players").fetchall()
    return {name: pid for pid, name in rows}


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

def assign_player_ids(
    names: Iterable[str],
    upstream_ids: dict[str, int],
    local_players: dict[str, int],
) -> list[PlayerAssignment]:
    """Decide the target id of every name not yet on the target.

    Args:
        names: Referenced player names, in the order to assign.
        upstream_ids: name -> id on the upstream side (may be partial).
        local_players: name -> id already on the target.

    Returns:
        One PlayerAssignment per new name. Ids are unique among themselves
        and against local_players; synthetic ids are always negative.
    """
    used_ids = set(local_players.values())
    next_negative = min((pid for pid in used_ids if pid < 0), default=0) - 1

    assignments: list[PlayerAssignment] = []
    seen: set[str] = set()
    for name in names:
        if name in local_players or name in seen:
            continue
        seen.add(name)

        upstream_id = upstream_ids.get(name)
        if upstream_id is not None and upstream_id not in used_ids:
            assignments.append(PlayerAssignment(name, upstream_id, upstream_id, False))
            used_ids.add(upstream_id)
            continue

        while next_negative in used_ids:
            next_negative -= 1
        pid = next_negative
        next_negative -= 1
        used_ids.add(pid)

        if upstream_id is None:
            log.warning(
                'Player "%s" does not exist upstream, assigned temporary ID %d', name, pid
            )
        else:
            log.warning(
                'Player ID %d already exists locally for a different player. '
                'Player "%s" assigned temporary ID %d',
                upstream_id, name, pid,
            )
        assignments.append(PlayerAssignment(name, pid, upstream_id, True))
    return assignments


def resolve_player_identities(
    ctx: SyncContext,
    event_ids: list[int],
) -> list[PlayerAssignment]:
    """Assignments for every new player referenced by the worklist."""
    names = collect_referenced_player_names(ctx.upstream, event_ids)
    if not names:
        return []
    upstream_ids = get_upstream_player_ids(ctx.upstream, names)
    local_players = get_local_players(ctx.target)
    ctx.target.rollback()
    return assign_player_ids(names, upstream_ids, local_players)
