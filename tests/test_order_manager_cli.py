import subprocess
import sys
from decimal import Decimal
from pathlib import Path

from papertrade.models import OrderStatus, Position
from papertrade.order_store import OrderStore
from papertrade.persistence_sqlite import SQLitePersistence

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "order_manager.py"


def run_cli(db_path, args):
    cmd = [sys.executable, str(SCRIPT), "--db", str(db_path)] + args
    res = subprocess.run(cmd, capture_output=True, text=True)
    return res.returncode, res.stdout, res.stderr


def _seed_position(db_path):
    persistence = SQLitePersistence(db_path)
    store = OrderStore(persistence)
    store.rescan_positions({"bitcoin": Position(symbol="bitcoin", quantity=Decimal("0.5"),
                                                average_price=Decimal("30000"))})
    persistence.close()


def _load(db_path):
    store = OrderStore(SQLitePersistence(db_path))
    store.load()
    return store


def test_cli_add_list_cancel(tmp_path: Path):
    db = tmp_path / "orders.db"

    code, out, _ = run_cli(db, ["add-limit", "BUY_LIMIT", "ethereum", "1800", "--amount", "500"])
    assert code == 0
    assert "Order added:" in out
    order_id = out.split("Order added: ")[1].split()[0]

    code, out, _ = run_cli(db, ["list"])
    assert code == 0
    assert order_id in out
    assert "Pending: 1" in out

    code, out, _ = run_cli(db, ["cancel", order_id])
    assert code == 0
    assert _load(db).get_order(order_id).status is OrderStatus.CANCELLED

    code, out, _ = run_cli(db, ["cancel", order_id])
    assert code == 2
    assert "already CANCELLED" in out


def test_cli_rejects_invalid_order(tmp_path: Path):
    db = tmp_path / "orders.db"

    code, out, _ = run_cli(db, ["add-limit", "SELL_LIMIT", "bitcoin", "40000", "--percentage", "150"])

    assert code == 2
    assert "percentage_of_position" in out
    assert _load(db).list_orders() == []


def test_cli_thresholds(tmp_path: Path):
    db = tmp_path / "orders.db"
    _seed_position(db)

    code, out, _ = run_cli(db, ["set-thresholds", "bitcoin", "--stop-loss", "28000", "--take-profit", "35000"])
    assert code == 0
    assert "ARMED" in out

    code, out, _ = run_cli(db, ["clear-thresholds", "bitcoin", "--take-profit"])
    assert code == 0
    position = _load(db).get_position("bitcoin")
    assert position.stop_loss == Decimal("28000")
    assert position.take_profit is None

    code, out, _ = run_cli(db, ["set-thresholds", "ethereum", "--stop-loss", "1"])
    assert code == 2
    assert "No open position" in out


def test_cli_schema(tmp_path: Path):
    code, out, _ = run_cli(tmp_path / "orders.db", ["schema"])
    assert code == 0
    assert "1: applied" in out
