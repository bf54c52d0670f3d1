import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, List, Tuple

from .db_migrations import apply_migrations
from .models import PendingOrder, Position


class PersistenceError(Exception):
    """A durable write or read of the order snapshot failed."""


class SQLitePersistence:
    """SQLite-backed snapshot of pending orders and protective watches.

    Each row carries an ``updated_at`` stamp (epoch milliseconds, strictly
    increasing across writes) that only moves when the row's content changes,
    so the tables alone reconstruct the store without replaying history.

    All snapshot writes use a single ``BEGIN IMMEDIATE`` transaction. The
    connection is shared between the event loop and worker threads, so reads
    and writes are serialized on one lock.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            apply_migrations(self.conn)
            self._last_stamp = self._max_stamp()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open order database {self.path}: {e}") from e

    def _max_stamp(self) -> int:
        cur = self.conn.cursor()
        cur.execute(
            "SELECT MAX(s) FROM (SELECT MAX(updated_at) AS s FROM pending_orders "
            "UNION ALL SELECT MAX(updated_at) FROM protective_watches)"
        )
        row = cur.fetchone()
        return row[0] or 0

    def _next_stamp(self) -> int:
        self._last_stamp = max(int(time.time() * 1000), self._last_stamp + 1)
        return self._last_stamp

    # --- Snapshot APIs ---
    def save_snapshot(self, orders: Iterable[PendingOrder], positions: Iterable[Position]) -> int:
        """Persist the full order set and position watches atomically.

        Rows absent from the given collections are deleted. Returns the stamp
        assigned to rows changed by this write.

        Raises:
            PersistenceError: if the transaction fails (nothing is written)
        """
        with self._lock:
            stamp = self._next_stamp()
            order_rows = [
                (o.id, o.symbol, o.kind.value, o.status.value, json.dumps(o.to_dict()),
                 int(o.created_at.timestamp() * 1000), stamp)
                for o in orders
            ]
            watch_rows = [(p.symbol, p.state.value, json.dumps(p.to_dict()), stamp) for p in positions]

            cur = self.conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                cur.executemany(
                    "INSERT INTO pending_orders(order_id, symbol, kind, status, value, created_at, updated_at) "
                    "VALUES(?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(order_id) DO UPDATE SET status = excluded.status, value = excluded.value, "
                    "updated_at = excluded.updated_at WHERE pending_orders.value != excluded.value",
                    order_rows,
                )
                cur.executemany(
                    "INSERT INTO protective_watches(symbol, state, value, updated_at) VALUES(?, ?, ?, ?) "
                    "ON CONFLICT(symbol) DO UPDATE SET state = excluded.state, value = excluded.value, "
                    "updated_at = excluded.updated_at WHERE protective_watches.value != excluded.value",
                    watch_rows,
                )
                self._delete_missing(cur, "pending_orders", "order_id", {r[0] for r in order_rows})
                self._delete_missing(cur, "protective_watches", "symbol", {r[0] for r in watch_rows})
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Snapshot write failed: {e}") from e
            return stamp

    @staticmethod
    def _delete_missing(cur, table: str, key: str, keep: set) -> None:
        cur.execute(f"SELECT {key} FROM {table}")
        stale = [(row[0],) for row in cur.fetchall() if row[0] not in keep]
        if stale:
            cur.executemany(f"DELETE FROM {table} WHERE {key} = ?", stale)

    def load_snapshot(self) -> Tuple[List[PendingOrder], List[Position]]:
        with self._lock:
            try:
                cur = self.conn.cursor()
                cur.execute("SELECT value FROM pending_orders ORDER BY created_at, order_id")
                orders = [PendingOrder.from_dict(json.loads(row[0])) for row in cur.fetchall()]
                cur.execute("SELECT value FROM protective_watches ORDER BY symbol")
                positions = [Position.from_dict(json.loads(row[0])) for row in cur.fetchall()]
            except sqlite3.Error as e:
                raise PersistenceError(f"Snapshot read failed: {e}") from e
            return orders, positions

    def close(self):
        try:
            self.conn.close()
        except sqlite3.Error:
            pass
