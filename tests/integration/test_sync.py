"""Integration tests for the sync_upstream pipeline.

Run against two ephemeral databases (upstream and target) from the
fixtures in conftest.py.
"""

from __future__ import annotations

import logging

from conftest import (
    add_archetype,
    add_deck,
    add_event,
    add_match,
    add_player,
    add_standing,
    count,
)
from mtgo_sync.diff import build_sync_plan, get_incomplete_events, get_upstream_events
from mtgo_sync.pipeline import run_sync
from mtgo_sync.shared import RejectWriter, SyncCounters


def _seed_small_event(up, event_id=100):
    add_event(up, event_id)
    add_player(up, 7, "Alice")
    add_player(up, 8, "Bob")
    add_standing(up, event_id, 1, "Alice")
    add_standing(up, event_id, 2, "Bob", points=6)
    add_match(up, 1, event_id, 1, "Alice", "Bob")
    add_match(up, 2, event_id, 1, "Bob", "Alice", result="loss")
    add_deck(up, 10, event_id, "Alice")
    add_archetype(up, 20, 10)


# ---------------------------------------------------------------------------
# Diff engine
# ---------------------------------------------------------------------------

class TestDiff:
    def test_new_events_exclude_local_ids(self, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        for eid, day in ((100, 0), (101, 1), (102, 2)):
            add_event(up, eid, days=day)
        add_event(tgt, 101, days=1)

        events = get_upstream_events(up, {101})
        assert [e["id"] for e in events] == [102, 100]
        assert set(events[0]) == {"id", "name", "date", "format", "kind", "rounds", "players"}

    def test_incomplete_window(self, target_db):
        tgt, _ = target_db
        add_player(tgt, 1, "Alice")
        add_event(tgt, 1, days=0)
        add_event(tgt, 2, days=1)
        add_event(tgt, 3, days=2)
        add_event(tgt, 4, days=3, players=0)
        # Standings but no matches is still incomplete.
        add_standing(tgt, 3, 1, "Alice")

        assert [e["id"] for e in get_incomplete_events(tgt, window=3)] == [3, 2, 1]
        assert [e["id"] for e in get_incomplete_events(tgt, window=2)] == [3, 2]

    def test_old_incomplete_event_behind_complete_ones(self, target_db):
        tgt, _ = target_db
        add_player(tgt, 1, "Alice")
        add_player(tgt, 2, "Bob")
        add_event(tgt, 1, days=0)
        for eid in range(2, 6):
            add_event(tgt, eid, days=eid)
            add_standing(tgt, eid, 1, "Alice")
            add_match(tgt, eid, eid, 1, "Alice", "Bob")

        assert [e["id"] for e in get_incomplete_events(tgt, window=2)] == [1]

    def test_complete_event_not_listed(self, target_db):
        tgt, _ = target_db
        add_player(tgt, 1, "Alice")
        add_player(tgt, 2, "Bob")
        add_event(tgt, 5)
        add_standing(tgt, 5, 1, "Alice")
        add_match(tgt, 1, 5, 1, "Alice", "Bob")
        assert get_incomplete_events(tgt) == []

    def test_plan_combines_both(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        add_event(up, 300, days=5)
        add_event(up, 200, days=1)
        add_event(tgt, 200, days=1)

        plan = build_sync_plan(sync_ctx)
        assert plan.new_event_ids == [300]
        assert plan.incomplete_event_ids == [200]
        assert plan.event_ids == [300, 200]


# ---------------------------------------------------------------------------
# Concrete scenarios
# ---------------------------------------------------------------------------

class TestScenarios:
    def test_new_player_adopts_upstream_id(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        _seed_small_event(up)

        ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx))

        assert tgt.execute("SELECT id FROM players WHERE name = 'Alice'").fetchone()[0] == 7
        assert count(tgt, "events", "id = 100") == 1
        assert count(tgt, "standings", "event_id = 100") == 2
        assert count(tgt, "matches", "event_id = 100") == 2
        assert count(tgt, "decks") == 1
        assert count(tgt, "archetypes") == 1
        assert ctrs.new_events == 1
        assert ctrs.players_inserted == 2
        assert ctrs.players_synthesized == 0
        assert ctrs.total_skipped() == 0

    def test_collision_synthesizes_negative_id(self, sync_ctx, upstream_db, target_db, caplog):
        up, _ = upstream_db
        tgt, _ = target_db
        add_player(tgt, 7, "Bob")
        add_event(up, 100)
        add_player(up, 7, "Alice")
        add_standing(up, 100, 1, "Alice")

        with caplog.at_level(logging.WARNING, logger="mtgo_sync.identity"):
            ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx))

        assert tgt.execute("SELECT id FROM players WHERE name = 'Alice'").fetchone()[0] == -1
        assert tgt.execute("SELECT name FROM players WHERE id = 7").fetchone()[0] == "Bob"
        assert count(tgt, "standings", "player = 'Alice'") == 1
        assert ctrs.players_synthesized == 1
        assert "temporary ID -1" in caplog.text

    def test_incomplete_event_gets_standings(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        add_event(tgt, 200, players=8)
        add_event(up, 200, players=8)
        add_player(up, 1, "Alice")
        add_player(up, 2, "Bob")
        add_standing(up, 200, 1, "Alice")
        add_match(up, 1, 200, 1, "Alice", "Bob")

        ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx))

        assert ctrs.new_events == 0
        assert ctrs.updated_events == 1
        assert ctrs.events_inserted == 0
        assert count(tgt, "standings", "event_id = 200") == 1
        assert count(tgt, "matches", "event_id = 200") == 1

    def test_fifteen_thousand_matches_in_three_chunks(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        add_event(up, 300, players=1000, rounds=15)
        up.execute(
            "INSERT INTO players (id, name) SELECT g, 'p' || g FROM generate_series(1, 1000) g"
        )
        up.execute(
            """
            INSERT INTO matches (id, event_id, round, player, opponent, record, result, isbye, games)
            SELECT (r - 1) * 1000 + g, 300, r, 'p' || g, 'p' || (g % 1000 + 1),
                   '2-0-0', 'win', false, '[]'::jsonb
            FROM generate_series(1, 15) r, generate_series(1, 1000) g
            """
        )

        ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx))

        assert ctrs.matches_inserted == 15000
        assert count(tgt, "matches", "event_id = 300") == 15000
        # players 1 + events 1 + matches 3 (7000, 7000, 1000)
        assert ctrs.chunks_written == 5


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

def _snapshot(conn):
    return {
        "players": conn.execute("SELECT id, name FROM players ORDER BY name").fetchall(),
        "events": conn.execute("SELECT * FROM events ORDER BY id").fetchall(),
        "standings": conn.execute("SELECT * FROM standings ORDER BY event_id, player").fetchall(),
        "matches": conn.execute("SELECT * FROM matches ORDER BY event_id, round, player").fetchall(),
        "decks": conn.execute("SELECT * FROM decks ORDER BY id").fetchall(),
        "archetypes": conn.execute("SELECT * FROM archetypes ORDER BY id").fetchall(),
    }


class TestProperties:
    def test_second_run_writes_nothing(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        _seed_small_event(up)
        # No matches for 101 keeps it incomplete so the second run revisits it.
        add_event(up, 101, days=1)
        add_standing(up, 101, 1, "Alice")

        first = run_sync(sync_ctx, build_sync_plan(sync_ctx))
        before = _snapshot(tgt)
        plan = build_sync_plan(sync_ctx)
        second = run_sync(sync_ctx, plan)

        assert first.total_written() > 0
        assert plan.incomplete_event_ids == [101]
        assert second.total_written() == 0
        assert second.total_skipped() == 0
        assert _snapshot(tgt) == before

    def test_nothing_to_sync(self, sync_ctx, capsys):
        ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx))
        assert ctrs.total_written() == 0
        assert "Local database is up to date" in capsys.readouterr().out

    def test_tiny_chunks_match_upstream(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        _seed_small_event(up)
        add_event(up, 101, days=1)
        add_player(up, 9, "Carol")
        for rank, name in enumerate(("Alice", "Bob", "Carol"), start=1):
            add_standing(up, 101, rank, name)
        add_match(up, 3, 101, 1, "Carol", "Alice")
        add_deck(up, 11, 101, "Bob")
        add_deck(up, 12, 101, "Carol")
        add_archetype(up, 21, 11, "Tron")
        add_archetype(up, 22, 12, "Affinity")

        ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx), param_limit=18)

        assert _snapshot(tgt) == _snapshot(up)
        assert ctrs.chunks_written > 6

    def test_no_orphans_on_target(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        _seed_small_event(up)
        run_sync(sync_ctx, build_sync_plan(sync_ctx))

        orphans = tgt.execute(
            """
            SELECT count(*) FROM standings s
            LEFT JOIN players p ON p.name = s.player
            LEFT JOIN events e ON e.id = s.event_id
            WHERE p.id IS NULL OR e.id IS NULL
            """
        ).fetchone()[0]
        assert orphans == 0

    def test_upstream_change_updates_row(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        add_event(up, 101)
        add_player(up, 1, "Alice")
        add_standing(up, 101, 1, "Alice", points=3)
        run_sync(sync_ctx, build_sync_plan(sync_ctx))

        up.execute("UPDATE standings SET points = 6 WHERE event_id = 101")
        ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx))

        assert ctrs.standings_updated == 1
        assert ctrs.standings_inserted == 0
        assert tgt.execute("SELECT points FROM standings WHERE event_id = 101").fetchone()[0] == 6


# ---------------------------------------------------------------------------
# Skips and dry run
# ---------------------------------------------------------------------------

class TestSkips:
    def test_deck_unique_violation_skipped(self, sync_ctx, upstream_db, target_db, tmp_path):
        up, _ = upstream_db
        tgt, _ = target_db
        for conn in (tgt, up):
            add_event(conn, 100)
            add_player(conn, 1, "Alice")
            add_player(conn, 2, "Bob")
        add_deck(tgt, 1, 100, "Alice")
        add_deck(up, 2, 100, "Alice")
        add_deck(up, 3, 100, "Bob")
        add_archetype(up, 30, 2)
        add_archetype(up, 31, 3)

        rejects = RejectWriter(tmp_path / "rejects.csv")
        ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx), rejects=rejects)
        rejects.close()

        assert ctrs.decks_inserted == 1
        assert ctrs.decks_skipped == 1
        assert ctrs.archetypes_inserted == 1
        assert ctrs.archetypes_skipped == 1
        assert sorted(r[0] for r in tgt.execute("SELECT id FROM decks").fetchall()) == [1, 3]
        assert rejects.rows_written == 2
        text = (tmp_path / "rejects.csv").read_text()
        assert "UniqueViolation" in text
        assert "missing_reference" in text

    def test_dry_run_writes_nothing(self, sync_ctx, upstream_db, target_db):
        up, _ = upstream_db
        tgt, _ = target_db
        add_player(tgt, 7, "Bob")
        add_event(up, 100)
        add_player(up, 7, "Alice")
        add_standing(up, 100, 1, "Alice")

        ctrs = run_sync(sync_ctx, build_sync_plan(sync_ctx), SyncCounters(), dry_run=True)

        assert ctrs.players_synthesized == 1
        assert ctrs.new_events == 1
        assert count(tgt, "players") == 1
        assert count(tgt, "events") == 0
