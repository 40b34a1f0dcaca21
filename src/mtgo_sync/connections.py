"""mtgo_sync.connections

Connection context for a run: the target handle plus the optional source
(live upstream) and scratch (imported snapshot) handles.

Components never open connections on their own; the CLI builds one
SyncContext and passes it into the diff engine, identity reconciler,
pipeline and merge adapter.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import psycopg
from psycopg.conninfo import conninfo_to_dict, make_conninfo

from mtgo_sync.shared import ConnectivityError

DEFAULT_CONNECT_TIMEOUT = 30


# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------

def build_conninfo(dsn: str, **overrides: object) -> str:
    """Normalize a libpq keyword string or postgres:// URL.

    URL-encoded database names and query parameters such as sslmode are
    decoded by libpq. connect_timeout defaults to 30 seconds; keyword
    overrides (e.g. dbname) replace whatever the DSN carried.
    """
    try:
        params = conninfo_to_dict(dsn)
    except psycopg.ProgrammingError as exc:
        raise ConnectivityError(f"invalid connection string: {exc}") from exc
    params.setdefault("connect_timeout", DEFAULT_CONNECT_TIMEOUT)
    params.update({k: v for k, v in overrides.items() if v is not None})
    return make_conninfo(**params)


def describe_conninfo(dsn: str) -> str:
    """Return host:port/dbname for log lines, never the password."""
    params = conninfo_to_dict(dsn)
    host = params.get("host") or "localhost"
    port = params.get("port") or "5432"
    dbname = params.get("dbname") or params.get("user") or "?"
    return f"{host}:{port}/{dbname}"


def connect(dsn: str, role: str, autocommit: bool = False) -> psycopg.Connection:
    """Open a connection and prove it with SELECT 1.

    Raises ConnectivityError naming the role (source/target/admin/scratch).
    """
    conninfo = build_conninfo(dsn)
    try:
        conn = psycopg.connect(conninfo, autocommit=autocommit)
    except psycopg.OperationalError as exc:
        raise ConnectivityError(
            f"failed to connect to {role} database {describe_conninfo(conninfo)}: {exc}"
        ) from exc
    try:
        conn.execute("SELECT 1").fetchone()
        if not autocommit:
            conn.rollback()
    except psycopg.Error as exc:
        conn.close()
        raise ConnectivityError(f"{role} database did not answer SELECT 1: {exc}") from exc
    return conn


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class SyncContext:
    """Handles for one run.

    target:  written to; autocommit off, the writer commits per chunk.
    source:  live upstream, read only (autocommit, no idle transaction).
    scratch: restored snapshot standing in for the source in merge mode.
    """
    target: psycopg.Connection
    source: psycopg.Connection | None = None
    scratch: psycopg.Connection | None = None

    @property
    def upstream(self) -> psycopg.Connection:
        """The connection rows are read from: scratch when merging, else source."""
        conn = self.scratch if self.scratch is not None else self.source
        if conn is None:
            raise ConnectivityError("no source or scratch connection in context")
        return conn

    def close(self) -> None:
        for conn in (self.scratch, self.source, self.target):
            if conn is not None and not conn.closed:
                conn.close()


@contextmanager
def open_sync_context(
    target_dsn: str,
    upstream_dsn: str | None = None,
) -> Iterator[SyncContext]:
    """Open target (and source, when given) and close both on exit."""
    target = connect(target_dsn, "target")
    ctx = SyncContext(target=target)
    try:
        if upstream_dsn:
            ctx.source = connect(upstream_dsn, "upstream", autocommit=True)
        yield ctx
    finally:
        ctx.close()
