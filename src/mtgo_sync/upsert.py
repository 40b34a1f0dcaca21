"""mtgo_sync.upsert

Batched upsert writer.

A record set is split into chunks so that rows * columns stays under the
server's bound-parameter limit, and every chunk is written as one
multi-row INSERT ... ON CONFLICT (natural key) statement committed on its
own. Chunk order is preserved; a failure in chunk K leaves chunks 1..K-1
committed, which is safe because every statement is keyed on the natural
key and re-running converges to the same rows.

Conflict handling:
  - update specs:  ON CONFLICT (key) DO UPDATE SET <cols> = EXCLUDED.<cols>
                   WHERE (current cols) IS DISTINCT FROM (incoming cols)
                   so unchanged rows are neither inserted nor updated.
  - insert-only:   ON CONFLICT (key) DO NOTHING (players, merge mode).

Integrity errors (FK / unique violations on a column that is not the
conflict key) roll the chunk back and replay it row by row under a
SAVEPOINT; offending rows are skipped and reported, the rest are kept.

The target connection must have autocommit off.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, Iterator, Sequence

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from mtgo_sync.shared import RejectWriter, UpsertResult

log = logging.getLogger(__name__)

# PostgreSQL's extended protocol carries the parameter count in an int16.
DEFAULT_PARAM_LIMIT = 65534


# ---------------------------------------------------------------------------
# Entity specs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntitySpec:
    entity: str
    table: str
    columns: tuple[str, ...]
    conflict_columns: tuple[str, ...]
    update_columns: tuple[str, ...] = ()
    json_columns: tuple[str, ...] = ()

    def insert_only(self) -> EntitySpec:
        return replace(self, update_columns=())

    def natural_key(self, row: dict[str, Any]) -> tuple:
        return tuple(row[c] for c in self.conflict_columns)


PLAYERS = EntitySpec(
    entity="players",
    table="players",
    columns=("id", "name"),
    conflict_columns=("name",),
)

EVENTS = EntitySpec(
    entity="events",
    table="events",
    columns=("id", "name", "date", "format", "kind", "rounds", "players"),
    conflict_columns=("id",),
    update_columns=("name", "date", "format", "kind", "rounds", "players"),
)

STANDINGS = EntitySpec(
    entity="standings",
    table="standings",
    columns=("event_id", "rank", "player", "record", "points", "omwp", "gwp", "owp"),
    conflict_columns=("event_id", "player"),
    update_columns=("rank", "record", "points", "omwp", "gwp", "owp"),
)

MATCHES = EntitySpec(
    entity="matches",
    table="matches",
    columns=("id", "event_id", "round", "player", "opponent", "record", "result", "isbye", "games"),
    conflict_columns=("event_id", "round", "player"),
    update_columns=("id", "opponent", "record", "result", "isbye", "games"),
    json_columns=("games",),
)

DECKS = EntitySpec(
    entity="decks",
    table="decks",
    columns=("id", "event_id", "player", "mainboard", "sideboard"),
    conflict_columns=("id",),
    update_columns=("event_id", "player", "mainboard", "sideboard"),
    json_columns=("mainboard", "sideboard"),
)

ARCHETYPES = EntitySpec(
    entity="archetypes",
    table="archetypes",
    columns=("id", "deck_id", "name", "archetype", "archetype_id"),
    conflict_columns=("id",),
    update_columns=("deck_id", "name", "archetype", "archetype_id"),
)

SPECS = {
    spec.entity: spec
    for spec in (PLAYERS, EVENTS, STANDINGS, MATCHES, DECKS, ARCHETYPES)
}


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

def chunk_size(param_limit: int, column_count: int) -> int:
    """Rows per statement for a given parameter limit.

    floor(limit / columns), rounded down to a whole thousand once it
    reaches 1000: 65534 gives 8000 rows of 8 columns, 7000 of 9, 13000 of 5.
    """
    if column_count <= 0:
        raise ValueError("column_count must be positive")
    rows = param_limit // column_count
    if rows < 1:
        raise ValueError(
            f"param_limit {param_limit} cannot fit one row of {column_count} columns"
        )
    if rows >= 1000:
        rows -= rows % 1000
    return rows


def chunked(rows: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def dedupe_rows(spec: EntitySpec, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Collapse rows sharing a natural key; the last one wins, first position kept.

    ON CONFLICT DO UPDATE cannot touch the same target row twice in one
    statement, so duplicates must not reach a chunk.
    """
    by_key: dict[tuple, dict[str, Any]] = {}
    for row in rows:
        by_key[spec.natural_key(row)] = row
    return list(by_key.values())


# ---------------------------------------------------------------------------
# Statement templates
# ---------------------------------------------------------------------------

@lru_cache(maxsize=64)
def build_upsert_statement(spec: EntitySpec, row_count: int) -> sql.Composed:
    """INSERT ... ON CONFLICT template for `row_count` VALUES tuples.

    The row count is the only thing that varies between calls for one
    entity, so a full-chunk run reuses a single template.
    """
    columns = sql.SQL(", ").join(sql.Identifier(c) for c in spec.columns)
    row = sql.SQL("({})").format(
        sql.SQL(", ").join([sql.Placeholder()] * len(spec.columns))
    )
    values = sql.SQL(", ").join([row] * row_count)
    conflict = sql.SQL(", ").join(sql.Identifier(c) for c in spec.conflict_columns)

    if spec.update_columns:
        assignments = sql.SQL(", ").join(
            sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
            for c in spec.update_columns
        )
        current = sql.SQL(", ").join(
            sql.Identifier(spec.table, c) for c in spec.update_columns
        )
        incoming = sql.SQL(", ").join(
            sql.SQL("EXCLUDED.{}").format(sql.Identifier(c)) for c in spec.update_columns
        )
        action = sql.SQL(
            "DO UPDATE SET {assignments} WHERE ({current}) IS DISTINCT FROM ({incoming})"
        ).format(assignments=assignments, current=current, incoming=incoming)
    else:
        action = sql.SQL("DO NOTHING")

    return sql.SQL(
        "INSERT INTO {table} ({columns}) VALUES {values} "
        "ON CONFLICT ({conflict}) {action} "
        "RETURNING (xmax = 0) AS inserted"
    ).format(
        table=sql.Identifier(spec.table),
        columns=columns,
        values=values,
        conflict=conflict,
        action=action,
    )


def _row_params(spec: EntitySpec, row: dict[str, Any]) -> list[Any]:
    params = []
    for col in spec.columns:
        value = row.get(col)
        if col in spec.json_columns and value is not None:
            value = Jsonb(value)
        params.append(value)
    return params


def _tally(flags: list[tuple], result: UpsertResult) -> None:
    for (inserted,) in flags:
        if inserted:
            result.inserted += 1
        else:
            result.updated += 1


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

def _replay_rows(
    conn: psycopg.Connection,
    spec: EntitySpec,
    batch: Sequence[dict[str, Any]],
    result: UpsertResult,
    rejects: RejectWriter | None,
) -> None:
    """Write a failed chunk one row at a time, skipping rows that violate constraints."""
    stmt = build_upsert_statement(spec, 1)
    try:
        for row in batch:
            conn.execute("SAVEPOINT upsert_row")
            try:
                flags = conn.execute(stmt, _row_params(spec, row)).fetchall()
            except psycopg.errors.IntegrityError as exc:
                conn.execute("ROLLBACK TO SAVEPOINT upsert_row")
                reason = f"{type(exc).__name__}: {exc.diag.message_primary or exc}"
                log.warning("Skipped %s %s: %s", spec.entity, spec.natural_key(row), reason)
                result.skipped += 1
                if rejects is not None:
                    rejects.write(spec.entity, row, reason)
            else:
                _tally(flags, result)
            conn.execute("RELEASE SAVEPOINT upsert_row")
        conn.commit()
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise


def _write_chunk(
    conn: psycopg.Connection,
    spec: EntitySpec,
    batch: Sequence[dict[str, Any]],
    result: UpsertResult,
    rejects: RejectWriter | None,
) -> None:
    stmt = build_upsert_statement(spec, len(batch))
    params = [p for row in batch for p in _row_params(spec, row)]
    try:
        with conn.cursor() as cur:
            cur.execute(stmt, params)
            flags = cur.fetchall()
        conn.commit()
    except psycopg.errors.IntegrityError as exc:
        conn.rollback()
        log.warning(
            "%s chunk of %d rows rejected (%s); replaying row by row",
            spec.entity, len(batch), exc.diag.message_primary or exc,
        )
        _replay_rows(conn, spec, batch, result, rejects)
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise
    else:
        _tally(flags, result)
    result.chunks += 1


def upsert_rows(
    conn: psycopg.Connection,
    spec: EntitySpec,
    rows: Sequence[dict[str, Any]],
    param_limit: int = DEFAULT_PARAM_LIMIT,
    rejects: RejectWriter | None = None,
) -> UpsertResult:
    """Insert-or-update `rows` into spec.table keyed on spec.conflict_columns.

    Args:
        conn: Target connection, autocommit off. Each chunk is committed.
        spec: Entity spec; use spec.insert_only() for DO NOTHING semantics.
        rows: Mappings holding at least spec.columns, in write order.
        param_limit: Bound on parameters per statement.
        rejects: Optional sink for rows skipped on integrity errors.

    Returns:
        UpsertResult with inserted / updated / skipped / chunk counts.
        Rows that already matched are counted in none of them.
    """
    result = UpsertResult()
    if not rows:
        return result
    rows = dedupe_rows(spec, rows)
    size = chunk_size(param_limit, len(spec.columns))
    done = 0
    for batch in chunked(rows, size):
        _write_chunk(conn, spec, batch, result, rejects)
        done += len(batch)
        if len(rows) > size:
            log.info("  wrote %d/%d %s", done, len(rows), spec.entity)
    return result
