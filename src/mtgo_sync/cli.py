"""mtgo_sync.cli

Unified CLI entrypoint.

Modes (--mode):
  sync_upstream  - pull new and incomplete events from a live upstream (default)
  merge_dump     - restore a dump into a scratch database and merge it in
  export_dump    - pg_dump the target to a plain SQL file
  recent_events  - list the most recent events on the target

Usage (sync_upstream):
    mtgo-sync \\
        --mode sync_upstream \\
        --target-dsn "$TARGET_DSN" \\
        --upstream-dsn "$UPSTREAM_CONNECTION_STRING"

Usage (merge_dump):
    mtgo-sync \\
        --mode merge_dump \\
        --target-dsn "$TARGET_DSN" \\
        --dump-path backups/mtgo_2026-10-01.dump
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from mtgo_sync.connections import (
    SyncContext,
    build_conninfo,
    connect,
    describe_conninfo,
    open_sync_context,
)
from mtgo_sync.diff import (
    DEFAULT_RECENT_WINDOW,
    build_sync_plan,
    format_event_preview,
    get_recent_events,
)
from mtgo_sync.merge import run_merge
from mtgo_sync.pipeline import run_sync
from mtgo_sync.shared import (
    RejectWriter,
    SyncCounters,
    SyncError,
    build_sync_report,
    write_run_report,
)
from mtgo_sync.snapshot import (
    DEFAULT_SCRATCH_DB,
    ScratchDatabase,
    export_dump,
    table_row_counts,
)
from mtgo_sync.upsert import DEFAULT_PARAM_LIMIT


@click.command()
@click.option(
    "--mode",
    default="sync_upstream",
    type=click.Choice(["sync_upstream", "merge_dump", "export_dump", "recent_events"]),
    show_default=True,
    help="Run mode",
)
@click.option("--target-dsn", envvar="TARGET_DSN", required=True, help="Target PostgreSQL DSN")
# sync_upstream flags
@click.option(
    "--upstream-dsn",
    envvar="UPSTREAM_CONNECTION_STRING",
    default=None,
    help="[sync_upstream] Upstream connection string or postgres:// URL",
)
@click.option(
    "--recent-window",
    default=DEFAULT_RECENT_WINDOW,
    type=int,
    show_default=True,
    help="[sync_upstream] Most incomplete target events (newest first) revisited per run",
)
# merge_dump / export_dump flags
@click.option("--dump-path", default=None, type=click.Path(), help="[merge_dump|export_dump] Dump file")
@click.option(
    "--admin-dsn",
    envvar="ADMIN_DSN",
    default=None,
    help="[merge_dump] DSN allowed to CREATE/DROP DATABASE (default: target with dbname=postgres)",
)
@click.option("--scratch-db-name", default=DEFAULT_SCRATCH_DB, show_default=True, help="[merge_dump] Scratch database name")
@click.option(
    "--pg-bin-dir",
    default=None,
    type=click.Path(file_okay=False),
    help="[merge_dump|export_dump] Directory holding psql/pg_restore/pg_dump (default: PATH)",
)
# recent_events flags
@click.option("--limit", default=10, type=int, show_default=True, help="[recent_events] Events to list")
# shared flags
@click.option(
    "--param-limit",
    default=DEFAULT_PARAM_LIMIT,
    type=int,
    show_default=True,
    help="[sync_upstream|merge_dump] Bound parameters per statement",
)
@click.option("--dry-run", is_flag=True, default=False, help="[sync_upstream] Plan and resolve players only")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/sync_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", envvar="LOG_LEVEL", default="INFO", show_default=True)
def main(
    mode: str,
    target_dsn: str,
    # sync_upstream
    upstream_dsn: str | None,
    recent_window: int,
    # merge_dump / export_dump
    dump_path: str | None,
    admin_dsn: str | None,
    scratch_db_name: str,
    pg_bin_dir: str | None,
    # recent_events
    limit: int,
    # shared
    param_limit: int,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Tournament database sync and merge CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    bin_dir = Path(pg_bin_dir) if pg_bin_dir else None

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        if mode == "sync_upstream":
            if not upstream_dsn:
                _fatal(run_id, "sync_upstream mode requires --upstream-dsn or UPSTREAM_CONNECTION_STRING")
            _run_sync_upstream(
                run_id, started_at, target_dsn, upstream_dsn,  # type: ignore[arg-type]
                recent_window=recent_window,
                param_limit=param_limit,
                rejects_path=rejects_path,
                dry_run=dry_run,
            )
        elif mode == "merge_dump":
            if not dump_path:
                _fatal(run_id, "merge_dump mode requires --dump-path")
            _run_merge_dump(
                run_id, started_at, target_dsn,
                dump_path=Path(dump_path),  # type: ignore[arg-type]
                admin_dsn=admin_dsn or build_conninfo(target_dsn, dbname="postgres"),
                scratch_db_name=scratch_db_name,
                bin_dir=bin_dir,
                param_limit=param_limit,
                rejects_path=rejects_path,
            )
        elif mode == "export_dump":
            if not dump_path:
                _fatal(run_id, "export_dump mode requires --dump-path")
            _run_export_dump(run_id, target_dsn, Path(dump_path), bin_dir)  # type: ignore[arg-type]
        elif mode == "recent_events":
            _run_recent_events(run_id, target_dsn, limit)
    except SyncError as exc:
        _fatal(run_id, str(exc))
    except psycopg.Error as exc:
        _fatal(run_id, f"database error: {exc}")

    click.echo(f"[{run_id}] Done.")


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_sync_upstream(
    run_id: str,
    started_at: str,
    target_dsn: str,
    upstream_dsn: str,
    recent_window: int,
    param_limit: int,
    rejects_path: str,
    dry_run: bool,
) -> None:
    counters = SyncCounters()
    rejects = RejectWriter(Path(rejects_path))
    click.echo(f"[{run_id}] Testing upstream database connection ({describe_conninfo(build_conninfo(upstream_dsn))})")
    try:
        with open_sync_context(target_dsn, upstream_dsn) as ctx:
            click.echo(f"[{run_id}] Connections OK")
            plan = build_sync_plan(ctx, window=recent_window)
            click.echo(f"[{run_id}] Found {len(plan.new_events)} new event(s) upstream")
            for line in format_event_preview(plan.new_events):
                click.echo(line)
            click.echo(
                f"[{run_id}] Found {len(plan.incomplete_events)} incomplete event(s) "
                f"(at most {recent_window}, newest first)"
            )
            for line in format_event_preview(plan.incomplete_events):
                click.echo(line)
            run_sync(ctx, plan, counters, param_limit, rejects, dry_run=dry_run)
    finally:
        rejects.close()

    click.echo(build_sync_report(counters, dry_run=dry_run))
    if rejects.rows_written:
        click.echo(f"[{run_id}] {rejects.rows_written} rejected row(s) written to {rejects.path}")
    report_path = write_run_report(
        run_id, started_at, "sync_upstream", dry_run,
        {"recent_window": recent_window, "param_limit": param_limit},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_merge_dump(
    run_id: str,
    started_at: str,
    target_dsn: str,
    dump_path: Path,
    admin_dsn: str,
    scratch_db_name: str,
    bin_dir: Path | None,
    param_limit: int,
    rejects_path: str,
) -> None:
    counters = SyncCounters()
    rejects = RejectWriter(Path(rejects_path))
    target = connect(target_dsn, "target")
    ctx = SyncContext(target=target)
    try:
        click.echo(f"[{run_id}] Restoring {dump_path} into scratch database {scratch_db_name}")
        with ScratchDatabase(admin_dsn, dump_path, scratch_db_name, bin_dir) as scratch:
            click.echo(f"[{run_id}] Snapshot tables: {', '.join(scratch.tables)}")
            ctx.scratch = scratch.conn
            run_merge(ctx, counters, param_limit, rejects, tables=scratch.tables)
            ctx.scratch = None
    finally:
        rejects.close()
        ctx.close()

    click.echo(build_sync_report(counters, title="Merge Summary"))
    report_path = write_run_report(
        run_id, started_at, "merge_dump", False,
        {"dump_path": str(dump_path), "scratch_db_name": scratch_db_name, "param_limit": param_limit},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_export_dump(
    run_id: str,
    target_dsn: str,
    dump_path: Path,
    bin_dir: Path | None,
) -> None:
    click.echo(f"[{run_id}] Exporting {describe_conninfo(build_conninfo(target_dsn))} to {dump_path}")
    export_dump(target_dsn, dump_path, bin_dir)
    conn = connect(target_dsn, "target", autocommit=True)
    try:
        counts = table_row_counts(conn)
    finally:
        conn.close()
    size_mb = dump_path.stat().st_size / (1024 * 1024)
    click.echo(f"[{run_id}] Wrote {dump_path} ({size_mb:.2f} MB)")
    for table, count in counts:
        click.echo(f"  {table:<14}{count:>10} row(s)")


def _run_recent_events(run_id: str, target_dsn: str, limit: int) -> None:
    conn = connect(target_dsn, "target", autocommit=True)
    try:
        events = get_recent_events(conn, limit)
    finally:
        conn.close()
    click.echo(f"[{run_id}] {len(events)} most recent event(s):")
    for e in events:
        click.echo(
            f"  [{e['id']}] {e['name']} {e['date']} "
            f"format={e['format']} kind={e['kind']} players={e['players']}"
        )


if __name__ == "__main__":
    main()
