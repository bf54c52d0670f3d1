from decimal import Decimal

import pytest

from papertrade.execution import ExecutionError, PaperExecutor, PaperPortfolio
from papertrade.models import Position, WatchState


def test_buy_opens_position_net_of_fee():
    portfolio = PaperPortfolio(initial_balance=Decimal("10000"), fee_rate=Decimal("0.001"))

    result = portfolio.buy("ethereum", Decimal("1000"), Decimal("2000"))

    assert result.side == "BUY"
    assert result.fee == Decimal("1.000")
    assert result.quantity == Decimal("0.4995")
    assert portfolio.balance == Decimal("9000")
    assert portfolio.positions["ethereum"].average_price == Decimal("2000")


def test_buy_averages_into_existing_position():
    portfolio = PaperPortfolio(fee_rate=Decimal("0"))
    portfolio.buy("ethereum", Decimal("1000"), Decimal("1000"))
    portfolio.buy("ethereum", Decimal("1000"), Decimal("2000"))

    pos = portfolio.positions["ethereum"]
    assert pos.quantity == Decimal("1.5")
    assert pos.average_price.quantize(Decimal("0.01")) == Decimal("1333.33")


def test_buy_keeps_thresholds_unless_given():
    portfolio = PaperPortfolio(fee_rate=Decimal("0"))
    portfolio.buy("ethereum", Decimal("1000"), Decimal("1000"), stop_loss=Decimal("900"))
    portfolio.buy("ethereum", Decimal("1000"), Decimal("1000"))

    pos = portfolio.positions["ethereum"]
    assert pos.stop_loss == Decimal("900")
    assert pos.state is WatchState.ARMED


def test_buy_insufficient_balance():
    portfolio = PaperPortfolio(initial_balance=Decimal("100"))
    with pytest.raises(ExecutionError):
        portfolio.buy("ethereum", Decimal("500"), Decimal("2000"))
    assert portfolio.balance == Decimal("100")
    assert portfolio.positions == {}


def test_full_sell_deletes_position_and_realizes_pnl():
    portfolio = PaperPortfolio(initial_balance=Decimal("0"))
    portfolio.positions["bitcoin"] = Position(symbol="bitcoin", quantity=Decimal("0.5"),
                                              average_price=Decimal("30000"))

    result = portfolio.sell("bitcoin", Decimal("100"), Decimal("27500"))

    assert result.quantity == Decimal("0.5")
    assert result.fee == Decimal("13.7500")
    assert result.realized_pnl == Decimal("-1263.7500")
    assert result.remaining_quantity == Decimal("0")
    assert "bitcoin" not in portfolio.positions
    assert portfolio.balance == Decimal("13736.2500")


def test_partial_sell_keeps_remainder():
    portfolio = PaperPortfolio(fee_rate=Decimal("0"))
    portfolio.positions["bitcoin"] = Position(symbol="bitcoin", quantity=Decimal("2"),
                                              average_price=Decimal("100"))

    result = portfolio.sell("bitcoin", Decimal("25"), Decimal("120"))

    assert result.quantity == Decimal("0.5")
    assert result.remaining_quantity == Decimal("1.5")
    assert result.realized_pnl == Decimal("10.0")


def test_sell_without_position():
    with pytest.raises(ExecutionError):
        PaperPortfolio().sell("bitcoin", Decimal("100"), Decimal("1"))


def test_snapshot_is_a_copy():
    portfolio = PaperPortfolio()
    portfolio.buy("ethereum", Decimal("1000"), Decimal("2000"))
    snap = portfolio.snapshot()
    snap["ethereum"].quantity = Decimal("0")
    assert portfolio.positions["ethereum"].quantity > 0


def test_total_value():
    portfolio = PaperPortfolio(initial_balance=Decimal("1000"), fee_rate=Decimal("0"))
    portfolio.buy("ethereum", Decimal("500"), Decimal("100"))
    assert portfolio.total_value({"ethereum": Decimal("110")}) == Decimal("1050")
    assert portfolio.total_value({}) == Decimal("1000")


def test_paper_executor_delegates():
    portfolio = PaperPortfolio()
    executor = PaperExecutor(portfolio)

    executor.execute_buy("ethereum", Decimal("1000"), Decimal("2000"))
    result = executor.execute_sell("ethereum", Decimal("100"), Decimal("2100"))

    assert result.side == "SELL"
    assert portfolio.positions == {}
    assert [t.side for t in portfolio.trades] == ["BUY", "SELL"]
