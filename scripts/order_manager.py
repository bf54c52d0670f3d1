#!/usr/bin/env python
"""Order management CLI: list, add and cancel limit orders, manage thresholds.

Operates directly on the order database; run it while the monitor is
stopped, otherwise the monitor's next flush overwrites the changes.

Usage:
    python scripts/order_manager.py --db data/orders.db list
    python scripts/order_manager.py --db data/orders.db add-limit BUY_LIMIT ethereum 1800 --amount 500
    python scripts/order_manager.py --db data/orders.db add-limit SELL_LIMIT bitcoin 40000 --percentage 50
    python scripts/order_manager.py --db data/orders.db cancel <order_id>
    python scripts/order_manager.py --db data/orders.db set-thresholds bitcoin --stop-loss 28000
    python scripts/order_manager.py --db data/orders.db clear-thresholds bitcoin --take-profit
    python scripts/order_manager.py --db data/orders.db prune --days 30
    python scripts/order_manager.py --db data/orders.db schema
"""
import argparse
import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from papertrade.db_migrations import MIGRATIONS
from papertrade.models import UNSET
from papertrade.order_store import OrderError, OrderStore
from papertrade.persistence_sqlite import PersistenceError, SQLitePersistence


def list_orders(store: OrderStore, show_all: bool = False):
    """Print pending (or all) orders and protected positions."""
    orders = store.list_orders() if show_all else store.list_pending()
    if not orders:
        print("No pending orders" if not show_all else "No orders")
    else:
        print(f"{'Order ID':<34} {'Kind':<11} {'Symbol':<14} {'Limit':<12} {'Size':<12} {'Status':<10}")
        print("-" * 96)
        for o in orders:
            size = f"${o.amount_quote}" if o.amount_quote is not None else f"{o.percentage_of_position}%"
            print(f"{o.id:<34} {o.kind.value:<11} {o.symbol:<14} {str(o.limit_price):<12} {size:<12} {o.status.value:<10}")

    protective = store.list_protective()
    if protective:
        print(f"\n{'Symbol':<14} {'Qty':<14} {'Avg Price':<12} {'Stop Loss':<12} {'Take Profit':<12} {'State':<8}")
        print("-" * 76)
        for p in protective:
            print(
                f"{p.symbol:<14} {str(p.quantity):<14} {str(p.average_price):<12} "
                f"{'-' if p.stop_loss is None else str(p.stop_loss):<12} {'-' if p.take_profit is None else str(p.take_profit):<12} {p.state.value:<8}"
            )
    print(f"\nPending: {len(store.list_pending())}  Protected positions: {len(protective)}")


def add_limit(store: OrderStore, args):
    order = store.add_pending_order(
        args.kind,
        args.symbol,
        args.price,
        amount_quote=args.amount,
        percentage_of_position=args.percentage,
    )
    print(f"Order added: {order.id} ({order.kind.value} {order.symbol} @ {order.limit_price})")


def set_thresholds(store: OrderStore, args):
    position = store.set_protective_thresholds(
        args.symbol,
        stop_loss=args.stop_loss if args.stop_loss is not None else UNSET,
        take_profit=args.take_profit if args.take_profit is not None else UNSET,
    )
    print(f"{position.symbol}: stop_loss={position.stop_loss} take_profit={position.take_profit} ({position.state.value})")


def show_schema(persistence: SQLitePersistence):
    cur = persistence.conn.cursor()
    cur.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
    applied = {row[0]: row[1] for row in cur.fetchall()}
    print("Migrations:")
    for v in sorted(MIGRATIONS.keys()):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Order management CLI")
    parser.add_argument("--db", default="data/orders.db", help="Path to SQLite database")

    sub = parser.add_subparsers(dest="cmd")

    lst = sub.add_parser("list")
    lst.add_argument("--all", action="store_true", help="Include filled and cancelled orders")

    add = sub.add_parser("add-limit")
    add.add_argument("kind", choices=["BUY_LIMIT", "SELL_LIMIT"])
    add.add_argument("symbol")
    add.add_argument("price")
    add.add_argument("--amount", help="Quote currency to spend (BUY_LIMIT)")
    add.add_argument("--percentage", help="Percent of position to sell (SELL_LIMIT)")

    cancel = sub.add_parser("cancel")
    cancel.add_argument("order_id")

    st = sub.add_parser("set-thresholds")
    st.add_argument("symbol")
    st.add_argument("--stop-loss")
    st.add_argument("--take-profit")

    ct = sub.add_parser("clear-thresholds")
    ct.add_argument("symbol")
    ct.add_argument("--stop-loss", action="store_true")
    ct.add_argument("--take-profit", action="store_true")

    prune = sub.add_parser("prune")
    prune.add_argument("--days", type=int, default=30, help="Drop resolved orders older than this")

    sub.add_parser("schema")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 1

    try:
        persistence = SQLitePersistence(Path(args.db))
    except PersistenceError as e:
        print(f"Cannot open database: {e}")
        return 1

    store = OrderStore(persistence)
    try:
        store.load()
        if args.cmd == "list":
            list_orders(store, show_all=args.all)
        elif args.cmd == "add-limit":
            add_limit(store, args)
        elif args.cmd == "cancel":
            order = store.cancel_pending_order(args.order_id)
            print(f"Order cancelled: {order.id}")
        elif args.cmd == "set-thresholds":
            set_thresholds(store, args)
        elif args.cmd == "clear-thresholds":
            position = store.clear_protective_thresholds(
                args.symbol, stop_loss=args.stop_loss, take_profit=args.take_profit
            )
            print(f"{position.symbol}: stop_loss={position.stop_loss} take_profit={position.take_profit}")
        elif args.cmd == "prune":
            removed = store.prune_resolved(timedelta(days=args.days))
            print(f"Pruned {removed} resolved orders")
        elif args.cmd == "schema":
            show_schema(persistence)
    except OrderError as e:
        print(f"Error: {e}")
        return 2
    except PersistenceError as e:
        print(f"Not saved: {e}")
        return 3
    finally:
        persistence.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
