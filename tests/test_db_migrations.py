import sqlite3

from papertrade.db_migrations import MIGRATIONS, apply_migrations, current_version, rollback_last


def _tables(conn):
    return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}


def _indexes(conn):
    return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}


def test_apply_migrations_creates_schema(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "m.db"))

    applied = apply_migrations(conn)

    assert applied == sorted(MIGRATIONS)
    assert current_version(conn) == max(MIGRATIONS)
    assert _tables(conn) == {"pending_orders", "protective_watches", "schema_migrations"}
    assert "idx_pending_orders_status" in _indexes(conn)


def test_apply_migrations_is_idempotent(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "m.db"))
    apply_migrations(conn)

    assert apply_migrations(conn) == []


def test_rollback_last_then_reapply(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "m.db"))
    apply_migrations(conn)

    assert rollback_last(conn) == 2
    assert "idx_pending_orders_status" not in _indexes(conn)
    assert current_version(conn) == 1

    assert rollback_last(conn) == 1
    assert "pending_orders" not in _tables(conn)
    assert rollback_last(conn) is None

    assert apply_migrations(conn) == [1, 2]
