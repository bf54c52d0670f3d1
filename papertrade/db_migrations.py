from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS pending_orders (
            order_id TEXT PRIMARY KEY,
            symbol TEXT NOT NULL,
            kind TEXT NOT NULL,
            status TEXT NOT NULL,
            value TEXT NOT NULL,
            created_at INTEGER,
            updated_at INTEGER NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS protective_watches (
            symbol TEXT PRIMARY KEY,
            state TEXT NOT NULL,
            value TEXT NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS pending_orders")
    cur.execute("DROP TABLE IF EXISTS protective_watches")


def _migration_2(conn):
    """Indices for the monitor's status and symbol lookups."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_pending_orders_status ON pending_orders(status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_pending_orders_symbol ON pending_orders(symbol)")


def _migration_2_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_pending_orders_status")
    cur.execute("DROP INDEX IF EXISTS idx_pending_orders_symbol")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
}


def current_version(conn) -> int:
    cur = conn.cursor()
    cur.execute("SELECT MAX(version) FROM schema_migrations")
    row = cur.fetchone()
    return row[0] or 0


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    Returns the list of applied migration versions.
    """
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()

    cur.execute("SELECT version FROM schema_migrations ORDER BY version")
    applied = {row[0] for row in cur.fetchall()}

    to_apply = sorted(v for v in MIGRATIONS.keys() if v not in applied)
    applied_now = []
    for v in to_apply:
        try:
            conn.execute("BEGIN IMMEDIATE")
            MIGRATIONS[v](conn)
            cur.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
                (v, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            applied_now.append(v)
        except Exception:
            conn.rollback()
            raise

    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    cur = conn.cursor()
    try:
        conn.execute("BEGIN IMMEDIATE")
        MIGRATION_DOWNS[version](conn)
        cur.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration; returns the rolled-back version or None."""
    cur = conn.cursor()
    cur.execute("SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1")
    row = cur.fetchone()
    if not row:
        return None
    v = row[0]
    rollback_migration(conn, v)
    return v
