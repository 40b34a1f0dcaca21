"""mtgo_sync.snapshot

Scratch-database handling for --mode merge_dump and the dump producer for
--mode export_dump.

ScratchDatabase lifecycle:
  1. DROP DATABASE IF EXISTS + CREATE DATABASE through an admin connection
  2. restore the dump with the format-appropriate client:
       custom / tar / directory archive  -> pg_restore --no-owner --no-acl
       plain SQL                         -> psql -f
     role / ownership / extension / "already exists" noise is discarded
  3. verify that at least one expected table landed in the public schema
  4. hand out an autocommit connection to stand in for the upstream
  5. drop the database on every exit path

The PostgreSQL client binaries are looked up on PATH unless a bin_dir is
given.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

import psycopg
from psycopg import sql

from mtgo_sync.connections import build_conninfo, connect
from mtgo_sync.shared import (
    SnapshotRestoreError,
    SnapshotVerificationError,
    SyncError,
)

log = logging.getLogger(__name__)

DEFAULT_SCRATCH_DB = "mtgo_temp_merge"

EXPECTED_TABLES = ("events", "players", "standings", "matches", "decks", "archetypes")

# Expected artifacts of restoring a dump made in another environment.
_BENIGN_MARKERS = ("role", "does not exist", "already exists", "extension")

_ARCHIVE_MAGIC = b"PGDMP"


# ---------------------------------------------------------------------------
# Dump files
# ---------------------------------------------------------------------------

def detect_dump_format(path: Path) -> str:
    """Return 'directory', 'custom', 'tar' or 'plain'."""
    if path.is_dir():
        if not (path / "toc.dat").exists():
            raise SnapshotRestoreError(f"{path} is a directory without toc.dat")
        return "directory"
    with path.open("rb") as fh:
        head = fh.read(512)
    if head.startswith(_ARCHIVE_MAGIC):
        return "custom"
    if len(head) >= 262 and head[257:262] == b"ustar":
        return "tar"
    return "plain"


def filter_restore_output(stderr: str) -> list[str]:
    """Drop blank lines and the expected cross-environment restore noise."""
    kept = []
    for line in stderr.splitlines():
        text = line.strip()
        if not text:
            continue
        lowered = text.lower()
        if any(marker in lowered for marker in _BENIGN_MARKERS):
            continue
        kept.append(text)
    return kept


def _client_binary(name: str, bin_dir: Path | None) -> str:
    if bin_dir is not None:
        return str(Path(bin_dir) / name)
    found = shutil.which(name)
    if found is None:
        raise SnapshotRestoreError(f"{name} not found on PATH")
    return found


def restore_command(
    fmt: str,
    path: Path,
    conninfo: str,
    bin_dir: Path | None = None,
) -> list[str]:
    if fmt == "plain":
        return [
            _client_binary("psql", bin_dir),
            "--no-psqlrc",
            "--quiet",
            "--set", "ON_ERROR_STOP=0",
            "--dbname", conninfo,
            "--file", str(path),
        ]
    return [
        _client_binary("pg_restore", bin_dir),
        "--no-owner",
        "--no-acl",
        "--format", fmt[0],
        "--dbname", conninfo,
        str(path),
    ]


def restore_dump(path: Path, conninfo: str, bin_dir: Path | None = None) -> None:
    """Load a dump into the database behind `conninfo`.

    Raises SnapshotRestoreError when anything other than warnings is left
    after filtering and the client exited non-zero, or, for plain SQL,
    when an ERROR line is left whatever the exit status.
    """
    fmt = detect_dump_format(path)
    cmd = restore_command(fmt, path, conninfo, bin_dir)
    log.info("Restoring %s dump %s", fmt, path)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise SnapshotRestoreError(f"could not run {cmd[0]}: {exc}") from exc

    remaining = filter_restore_output(proc.stderr)
    errors = [line for line in remaining if "warning" not in line.lower()]
    # psql runs with ON_ERROR_STOP=0 and exits 0 after failed statements.
    failed = proc.returncode != 0 or (
        fmt == "plain" and any("ERROR:" in line for line in errors)
    )
    if failed and errors:
        raise SnapshotRestoreError(
            f"{Path(cmd[0]).name} exited {proc.returncode}: " + "; ".join(errors[:5])
        )
    for line in remaining[:20]:
        log.warning("restore: %s", line)


def list_public_tables(conn: psycopg.Connection) -> list[str]:
    rows = conn.execute(
        """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = 'public' AND table_type = 'BASE TABLE'
        ORDER BY table_name
        """
    ).fetchall()
    return [r[0] for r in rows]


def verify_snapshot(
    conn: psycopg.Connection,
    expected: tuple[str, ...] = EXPECTED_TABLES,
) -> list[str]:
    tables = list_public_tables(conn)
    if not any(t in tables for t in expected):
        raise SnapshotVerificationError(
            "no expected tables found in scratch database - "
            "the dump is not a valid dataset or did not import"
        )
    return tables


# ---------------------------------------------------------------------------
# Scratch database
# ---------------------------------------------------------------------------

class ScratchDatabase:
    """Disposable database holding an imported dump.

    Use as a context manager; `conn` is valid inside the block and the
    database is gone after it.
    """

    def __init__(
        self,
        admin_dsn: str,
        dump_path: Path,
        name: str = DEFAULT_SCRATCH_DB,
        bin_dir: Path | None = None,
    ) -> None:
        self.name = name
        self.dump_path = Path(dump_path)
        self.bin_dir = bin_dir
        self.conninfo = build_conninfo(admin_dsn, dbname=name)
        self._admin_dsn = admin_dsn
        self.conn: psycopg.Connection | None = None
        self.tables: list[str] = []

    def _execute_admin(self, statement: sql.Composable) -> None:
        admin = connect(self._admin_dsn, "admin", autocommit=True)
        try:
            admin.execute(statement)
        except psycopg.Error as exc:
            raise SnapshotRestoreError(f"scratch database {self.name}: {exc}") from exc
        finally:
            admin.close()

    def create(self) -> None:
        self._execute_admin(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(self.name)))
        self._execute_admin(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(self.name)))
        log.info("Created scratch database %s", self.name)

    def drop(self) -> None:
        if self.conn is not None and not self.conn.closed:
            self.conn.close()
        self._execute_admin(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(self.name)))
        log.info("Dropped scratch database %s", self.name)

    def _drop_quietly(self) -> None:
        try:
            self.drop()
        except SyncError as exc:
            log.error("Could not drop scratch database %s: %s", self.name, exc)

    def __enter__(self) -> ScratchDatabase:
        if not self.dump_path.exists():
            raise SnapshotRestoreError(f"dump file not found: {self.dump_path}")
        self.create()
        try:
            restore_dump(self.dump_path, self.conninfo, self.bin_dir)
            self.conn = connect(self.conninfo, "scratch", autocommit=True)
            self.tables = verify_snapshot(self.conn)
        except BaseException:
            self._drop_quietly()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.drop()
        else:
            self._drop_quietly()


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def export_dump(dsn: str, output_path: Path, bin_dir: Path | None = None) -> Path:
    """Plain-format pg_dump of the target, restorable by merge_dump."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        _client_binary("pg_dump", bin_dir),
        "--clean",
        "--if-exists",
        "--format=plain",
        "--no-owner",
        "--no-privileges",
        "--dbname", build_conninfo(dsn),
        "--file", str(output_path),
    ]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise SyncError(f"could not run pg_dump: {exc}") from exc
    if proc.returncode != 0:
        raise SyncError(f"pg_dump exited {proc.returncode}: {proc.stderr.strip()}")
    return output_path


def table_row_counts(conn: psycopg.Connection) -> list[tuple[str, int]]:
    counts = []
    for table in list_public_tables(conn):
        row = conn.execute(
            sql.SQL("SELECT count(*) FROM {}").format(sql.Identifier(table))
        ).fetchone()
        counts.append((table, int(row[0])))
    return counts
