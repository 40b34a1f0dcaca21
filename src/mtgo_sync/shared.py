"""mtgo_sync.shared

Shared pieces used by both sync_upstream and merge_dump modes.
Includes the exception taxonomy, RejectWriter, SyncCounters, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

# Dependency order for every write pipeline; see pipeline.run_sync.
ENTITY_ORDER = ("players", "events", "standings", "matches", "decks", "archetypes")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SyncError(Exception):
    """Base class for fatal run errors."""


class ConnectivityError(SyncError):
    """Raised when the source, target or admin database cannot be reached."""


class SnapshotRestoreError(SyncError):
    """Raised when the scratch database cannot be provisioned, restored or dropped."""


class SnapshotVerificationError(SyncError):
    """Raised when a restored snapshot does not contain any expected table."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for skipped records.

    The header is taken from the first record written for each entity, so
    one file can hold rows of different shapes; each row carries its
    entity name in ``_entity``.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entity: str, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.writer(self._fh)
            self._writer.writerow(["_entity", "_reject_reason", "_record"])
        self._writer.writerow([entity, reason, json.dumps(row, default=str)])
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class UpsertResult:
    """Outcome of one upsert_rows call."""
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    chunks: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


@dataclass
class SyncCounters:
    # Worklist
    new_events: int = 0
    updated_events: int = 0
    # Players
    players_read: int = 0
    players_inserted: int = 0
    players_updated: int = 0
    players_skipped: int = 0
    players_synthesized: int = 0
    # Events
    events_read: int = 0
    events_inserted: int = 0
    events_updated: int = 0
    events_skipped: int = 0
    # Standings
    standings_read: int = 0
    standings_inserted: int = 0
    standings_updated: int = 0
    standings_skipped: int = 0
    # Matches
    matches_read: int = 0
    matches_inserted: int = 0
    matches_updated: int = 0
    matches_skipped: int = 0
    # Decks
    decks_read: int = 0
    decks_inserted: int = 0
    decks_updated: int = 0
    decks_skipped: int = 0
    # Archetypes
    archetypes_read: int = 0
    archetypes_inserted: int = 0
    archetypes_updated: int = 0
    archetypes_skipped: int = 0
    # Writer
    chunks_written: int = 0
    warnings: list[str] = field(default_factory=list)

    def add_result(self, entity: str, result: UpsertResult) -> None:
        """Fold one writer result into the per-entity counters."""
        setattr(self, f"{entity}_inserted", getattr(self, f"{entity}_inserted") + result.inserted)
        setattr(self, f"{entity}_updated", getattr(self, f"{entity}_updated") + result.updated)
        setattr(self, f"{entity}_skipped", getattr(self, f"{entity}_skipped") + result.skipped)
        self.chunks_written += result.chunks

    def written(self, entity: str) -> int:
        return getattr(self, f"{entity}_inserted") + getattr(self, f"{entity}_updated")

    def total_written(self) -> int:
        return sum(self.written(e) for e in ENTITY_ORDER)

    def total_skipped(self) -> int:
        return sum(getattr(self, f"{e}_skipped") for e in ENTITY_ORDER)

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_events": self.new_events,
            "updated_events": self.updated_events,
            "players_read": self.players_read,
            "players_inserted": self.players_inserted,
            "players_updated": self.players_updated,
            "players_skipped": self.players_skipped,
            "players_synthesized": self.players_synthesized,
            "events_read": self.events_read,
            "events_inserted": self.events_inserted,
            "events_updated": self.events_updated,
            "events_skipped": self.events_skipped,
            "standings_read": self.standings_read,
            "standings_inserted": self.standings_inserted,
            "standings_updated": self.standings_updated,
            "standings_skipped": self.standings_skipped,
            "matches_read": self.matches_read,
            "matches_inserted": self.matches_inserted,
            "matches_updated": self.matches_updated,
            "matches_skipped": self.matches_skipped,
            "decks_read": self.decks_read,
            "decks_inserted": self.decks_inserted,
            "decks_updated": self.decks_updated,
            "decks_skipped": self.decks_skipped,
            "archetypes_read": self.archetypes_read,
            "archetypes_inserted": self.archetypes_inserted,
            "archetypes_updated": self.archetypes_updated,
            "archetypes_skipped": self.archetypes_skipped,
            "chunks_written": self.chunks_written,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Text reports
# ---------------------------------------------------------------------------

def build_sync_report(
    ctrs: SyncCounters,
    title: str = "Sync Summary",
    dry_run: bool = False,
) -> str:
    lines = [
        "=" * 60,
        title,
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"New Events:       {ctrs.new_events}",
        f"Updated Events:   {ctrs.updated_events}",
        f"Total Events:     {ctrs.new_events + ctrs.updated_events}",
        "-" * 60,
        f"{'':<14}{'read':>10}{'inserted':>10}{'updated':>10}{'skipped':>10}",
    ]
    for entity in ENTITY_ORDER:
        lines.append(
            f"{entity.capitalize():<14}"
            f"{getattr(ctrs, f'{entity}_read'):>10}"
            f"{getattr(ctrs, f'{entity}_inserted'):>10}"
            f"{getattr(ctrs, f'{entity}_updated'):>10}"
            f"{getattr(ctrs, f'{entity}_skipped'):>10}"
        )
    lines.append("-" * 60)
    lines.append(f"Synthesized player ids: {ctrs.players_synthesized}")
    lines.append(f"Chunks written:         {ctrs.chunks_written}")
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    params: dict[str, Any],
    counters: SyncCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **params,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
