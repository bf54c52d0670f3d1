"""
Executor and portfolio collaborators for the order monitor.

The monitor never mutates balances or holdings itself: it asks an
``OrderExecutor`` to buy or sell and reads holdings back through a
``PortfolioSnapshotProvider``. ``PaperPortfolio`` / ``PaperExecutor`` are the
in-process simulated implementations used by the paper-trading setup and
the tests.
"""

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from .logging_setup import logger
from .models import Position, utcnow

HUNDRED = Decimal("100")


class ExecutionError(Exception):
    """The executor could not carry out a buy or sell (e.g. insufficient balance)."""


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one executed trade.

    Attributes:
        symbol: Traded symbol
        side: "BUY" or "SELL"
        quantity: Units bought or sold
        price: Execution price per unit
        quote_amount: Gross quote currency spent or received
        fee: Fee charged in quote currency
        realized_pnl: Profit/loss of a sell, net of fees (None for buys)
        remaining_quantity: Units still held after the trade
    """

    symbol: str
    side: str
    quantity: Decimal
    price: Decimal
    quote_amount: Decimal
    fee: Decimal
    remaining_quantity: Decimal
    realized_pnl: Optional[Decimal] = None


class OrderExecutor(ABC):
    """Buys and sells against the portfolio on the monitor's behalf.

    Implementations may be sync or async. A raised exception means nothing
    was executed; the monitor then leaves the triggering order or watch in
    place for the next tick.
    """

    @abstractmethod
    def execute_buy(self, symbol: str, amount_quote: Decimal, price: Decimal) -> ExecutionResult:
        """Spend ``amount_quote`` of quote currency on ``symbol`` at ``price``.

        Raises:
            ExecutionError: if the buy cannot be executed
        """

    @abstractmethod
    def execute_sell(self, symbol: str, percentage: Decimal, price: Decimal) -> ExecutionResult:
        """Sell ``percentage`` (0-100] of the ``symbol`` position at ``price``.

        Raises:
            ExecutionError: if there is no position or the sell cannot be executed
        """


class PortfolioSnapshotProvider(ABC):
    @abstractmethod
    def snapshot(self) -> Mapping[str, Position]:
        """Read-only view of open positions keyed by symbol."""


@dataclass
class TradeRecord:
    symbol: str
    side: str
    quantity: Decimal
    price: Decimal
    quote_amount: Decimal
    fee: Decimal
    realized_pnl: Optional[Decimal] = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())


class PaperPortfolio(PortfolioSnapshotProvider):
    """Virtual cash balance and holdings with a flat percentage fee."""

    def __init__(self, initial_balance: Decimal = Decimal("10000"), fee_rate: Decimal = Decimal("0.001")):
        self.initial_balance = initial_balance
        self.balance = initial_balance
        self.fee_rate = fee_rate
        self.positions: Dict[str, Position] = {}
        self.trades: List[TradeRecord] = []

    def buy(
        self,
        symbol: str,
        amount_quote: Decimal,
        price: Decimal,
        *,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
    ) -> ExecutionResult:
        if amount_quote <= 0 or price <= 0:
            raise ExecutionError(f"Invalid buy: amount={amount_quote} price={price}")
        if amount_quote > self.balance:
            raise ExecutionError(
                f"Insufficient balance for {symbol}: need {amount_quote}, have {self.balance}"
            )

        fee = amount_quote * self.fee_rate
        net = amount_quote - fee
        quantity = net / price
        self.balance -= amount_quote

        existing = self.positions.get(symbol)
        if existing is None:
            self.positions[symbol] = Position(
                symbol=symbol,
                quantity=quantity,
                average_price=price,
                stop_loss=stop_loss,
                take_profit=take_profit,
            )
        else:
            total = existing.quantity + quantity
            existing.average_price = (existing.quantity * existing.average_price + net) / total
            existing.quantity = total
            # new thresholds only replace existing ones when given
            if stop_loss is not None:
                existing.stop_loss = stop_loss
            if take_profit is not None:
                existing.take_profit = take_profit
            existing.updated_at = utcnow()
            existing.refresh_state()

        self.trades.append(TradeRecord(symbol, "BUY", quantity, price, amount_quote, fee))
        return ExecutionResult(
            symbol=symbol,
            side="BUY",
            quantity=quantity,
            price=price,
            quote_amount=amount_quote,
            fee=fee,
            remaining_quantity=self.positions[symbol].quantity,
        )

    def sell(self, symbol: str, percentage: Decimal, price: Decimal) -> ExecutionResult:
        position = self.positions.get(symbol)
        if position is None:
            raise ExecutionError(f"No position to sell for {symbol}")
        if not (Decimal("0") < percentage <= HUNDRED):
            raise ExecutionError(f"Invalid sell percentage: {percentage}")

        quantity = position.quantity if percentage == HUNDRED else position.quantity * percentage / HUNDRED
        gross = quantity * price
        fee = gross * self.fee_rate
        net = gross - fee
        realized = net - quantity * position.average_price

        self.balance += net
        remaining = position.quantity - quantity
        if remaining <= 0:
            del self.positions[symbol]
            remaining = Decimal("0")
        else:
            position.quantity = remaining
            position.updated_at = utcnow()

        self.trades.append(TradeRecord(symbol, "SELL", quantity, price, gross, fee, realized))
        return ExecutionResult(
            symbol=symbol,
            side="SELL",
            quantity=quantity,
            price=price,
            quote_amount=gross,
            fee=fee,
            remaining_quantity=remaining,
            realized_pnl=realized,
        )

    def snapshot(self) -> Dict[str, Position]:
        return {s: dataclasses.replace(p) for s, p in self.positions.items()}

    def total_value(self, prices: Mapping[str, Decimal]) -> Decimal:
        """Cash plus holdings marked at ``prices`` (average price when missing)."""
        held = sum(
            (p.quantity * prices.get(s, p.average_price) for s, p in self.positions.items()),
            Decimal("0"),
        )
        return self.balance + held


class PaperExecutor(OrderExecutor):
    """Executes monitor triggers against a PaperPortfolio."""

    def __init__(self, portfolio: PaperPortfolio):
        self.portfolio = portfolio

    def execute_buy(self, symbol: str, amount_quote: Decimal, price: Decimal) -> ExecutionResult:
        result = self.portfolio.buy(symbol, amount_quote, price)
        logger.bind(trade=True).info(
            f"Paper buy | symbol={symbol} qty={result.quantity} price={price} "
            f"cost={amount_quote} fee={result.fee} balance={self.portfolio.balance}"
        )
        return result

    def execute_sell(self, symbol: str, percentage: Decimal, price: Decimal) -> ExecutionResult:
        result = self.portfolio.sell(symbol, percentage, price)
        logger.bind(trade=True).info(
            f"Paper sell | symbol={symbol} qty={result.quantity} price={price} "
            f"pnl={result.realized_pnl} remaining={result.remaining_quantity} balance={self.portfolio.balance}"
        )
        return result
