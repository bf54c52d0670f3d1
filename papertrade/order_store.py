"""
Order store: the single source of truth for what the monitor watches.

Holds protective thresholds for open positions and resting limit orders.
Caller-facing mutations are written through to persistence before they
return (write-then-acknowledge); a failed write restores the previous
in-memory state and raises ``PersistenceError``. The monitor mutates with
``persist=False`` and calls ``flush()`` once per tick.

Examples:
    >>> from decimal import Decimal
    >>> store = OrderStore()
    >>> order = store.add_pending_order("BUY_LIMIT", "ethereum", Decimal("1800"),
    ...                                 amount_quote=Decimal("500"))
    >>> store.cancel_pending_order(order.id).status
    <OrderStatus.CANCELLED: 'CANCELLED'>
"""

import copy
import dataclasses
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .logging_setup import logger
from .models import (
    UNSET,
    OrderKind,
    OrderStatus,
    PendingOrder,
    Position,
    WatchState,
    utcnow,
)
from .persistence_sqlite import PersistenceError, SQLitePersistence


class OrderError(Exception):
    """Rejected order-store mutation; surfaced to the caller as-is."""


class InvalidOrder(OrderError):
    pass


class NotFound(OrderError):
    pass


class AlreadyResolved(OrderError):
    pass


class NoPosition(OrderError):
    pass


class InvalidThreshold(OrderError):
    pass


def _to_decimal(value: Any, name: str, error: type) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise error(f"{name} must be a number, got {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise error(f"{name} must be a number, got {value!r}")
    if not result.is_finite():
        raise error(f"{name} must be finite, got {value!r}")
    return result


@dataclass
class RescanReport:
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)


class OrderStore:
    """Pending limit orders and position watches, persisted as one snapshot."""

    def __init__(self, persistence: Optional[SQLitePersistence] = None):
        self.persistence = persistence
        self.orders: Dict[str, PendingOrder] = {}
        self.positions: Dict[str, Position] = {}

    # --- Persistence ---
    def load(self) -> None:
        """Restore the last persisted snapshot.

        PENDING orders are re-armed for monitoring; terminal orders are kept
        for audit only. A watch persisted mid-trigger is restored as ARMED so
        the threshold is evaluated again rather than assumed executed.
        """
        if self.persistence is None:
            return
        orders, positions = self.persistence.load_snapshot()
        self.orders = {o.id: o for o in orders}
        self.positions = {}
        for pos in positions:
            if pos.quantity <= 0:
                continue
            if pos.state is WatchState.TRIGGERED:
                pos.state = WatchState.ARMED
            pos.refresh_state()
            self.positions[pos.symbol] = pos
        pending = sum(1 for o in orders if o.is_pending)
        logger.info(
            f"Order store loaded | pending={pending} terminal={len(orders) - pending} "
            f"positions={len(self.positions)}"
        )

    def snapshot(self) -> Tuple[List[PendingOrder], List[Position]]:
        """Detached copies of every order and watch, safe to hand to another thread."""
        return (
            [dataclasses.replace(o) for o in self.orders.values()],
            [dataclasses.replace(p) for p in self.positions.values()],
        )

    def write(self, orders: List[PendingOrder], positions: List[Position]) -> None:
        if self.persistence is None:
            return
        self.persistence.save_snapshot(orders, positions)

    def flush(self) -> None:
        """Write the full order set. Raises PersistenceError on failure."""
        if self.persistence is None:
            return
        self.write(*self.snapshot())

    def _write_through(self, undo: Callable[[], None]) -> None:
        try:
            self.flush()
        except PersistenceError:
            undo()
            raise

    def _restore_positions(self, saved: Dict[str, Position]) -> Callable[[], None]:
        def undo() -> None:
            self.positions = saved
        return undo

    # --- Pending limit orders ---
    def add_pending_order(
        self,
        kind: Any,
        symbol: str,
        limit_price: Any,
        *,
        amount_quote: Any = None,
        percentage_of_position: Any = None,
    ) -> PendingOrder:
        """Create a PENDING limit order.

        Args:
            kind: OrderKind or its name ("BUY_LIMIT" / "SELL_LIMIT")
            symbol: Feed symbol to watch
            limit_price: Trigger price, must be > 0
            amount_quote: Quote currency to spend (BUY_LIMIT only)
            percentage_of_position: Share of the position to sell, 0 < p <= 100
                (SELL_LIMIT only)

        Raises:
            InvalidOrder: bad kind, symbol, price, or not exactly one valid sizing
        """
        try:
            kind = kind if isinstance(kind, OrderKind) else OrderKind(str(kind).upper())
        except ValueError:
            raise InvalidOrder(f"Unknown order kind: {kind!r}")
        if not symbol or not isinstance(symbol, str):
            raise InvalidOrder("symbol is required")

        price = _to_decimal(limit_price, "limit_price", InvalidOrder)
        if price <= 0:
            raise InvalidOrder(f"limit_price must be > 0, got {price}")

        if (amount_quote is None) == (percentage_of_position is None):
            raise InvalidOrder("Exactly one of amount_quote or percentage_of_position must be set")

        quote = pct = None
        if kind is OrderKind.BUY_LIMIT:
            if amount_quote is None:
                raise InvalidOrder("BUY_LIMIT orders are sized with amount_quote")
            quote = _to_decimal(amount_quote, "amount_quote", InvalidOrder)
            if quote <= 0:
                raise InvalidOrder(f"amount_quote must be > 0, got {quote}")
        else:
            if percentage_of_position is None:
                raise InvalidOrder("SELL_LIMIT orders are sized with percentage_of_position")
            pct = _to_decimal(percentage_of_position, "percentage_of_position", InvalidOrder)
            if not (Decimal("0") < pct <= Decimal("100")):
                raise InvalidOrder(f"percentage_of_position must be in (0, 100], got {pct}")

        order = PendingOrder(
            kind=kind,
            symbol=symbol,
            limit_price=price,
            amount_quote=quote,
            percentage_of_position=pct,
        )
        self.orders[order.id] = order
        self._write_through(lambda: self.orders.pop(order.id, None))
        logger.info(
            f"Limit order added | id={order.id} kind={kind.value} symbol={symbol} "
            f"limit={price} amount_quote={quote} pct={pct}"
        )
        return dataclasses.replace(order)

    def cancel_pending_order(self, order_id: str) -> PendingOrder:
        """Cancel a PENDING order.

        Raises:
            NotFound: no order with this id
            AlreadyResolved: the order is FILLED or already CANCELLED
        """
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        if not order.is_pending:
            raise AlreadyResolved(f"Order {order_id} is already {order.status.value}")

        previous = dataclasses.replace(order)
        now = utcnow()
        order.status = OrderStatus.CANCELLED
        order.resolved_at = now
        order.updated_at = now
        self._write_through(lambda: self.orders.__setitem__(order_id, previous))
        logger.info(f"Limit order cancelled | id={order_id} symbol={order.symbol}")
        return dataclasses.replace(order)

    def mark_filled(self, order_id: str, fill_price: Decimal, *, persist: bool = True) -> PendingOrder:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        if not order.is_pending:
            raise AlreadyResolved(f"Order {order_id} is already {order.status.value}")

        previous = dataclasses.replace(order)
        now = utcnow()
        order.status = OrderStatus.FILLED
        order.fill_price = fill_price
        order.resolved_at = now
        order.updated_at = now
        if persist:
            self._write_through(lambda: self.orders.__setitem__(order_id, previous))
        return dataclasses.replace(order)

    def prune_resolved(self, older_than: timedelta, *, persist: bool = True) -> int:
        """Drop terminal orders resolved before ``now - older_than``. PENDING orders are never pruned."""
        cutoff = utcnow() - older_than
        stale = [
            oid for oid, o in self.orders.items()
            if o.status.terminal and o.resolved_at is not None and o.resolved_at < cutoff
        ]
        if not stale:
            return 0
        saved = dict(self.orders)
        for oid in stale:
            del self.orders[oid]
        if persist:
            def undo() -> None:
                self.orders = saved
            self._write_through(undo)
        return len(stale)

    # --- Protective thresholds ---
    def set_protective_thresholds(self, symbol: str, stop_loss: Any = UNSET, take_profit: Any = UNSET) -> Position:
        """Set stop-loss and/or take-profit on an open position.

        ``UNSET`` or ``None`` leaves a threshold unchanged; thresholds are only
        removed through ``clear_protective_thresholds``. ``Decimal("0")`` is a
        real value.

        Raises:
            NoPosition: the symbol has no open position
            InvalidThreshold: stop_loss >= average_price, stop_loss < 0, or
                take_profit <= average_price
        """
        position = self.positions.get(symbol)
        if position is None:
            raise NoPosition(f"No open position for {symbol}")

        new_stop = position.stop_loss
        new_take = position.take_profit
        if stop_loss is not UNSET and stop_loss is not None:
            new_stop = _to_decimal(stop_loss, "stop_loss", InvalidThreshold)
            if new_stop < 0 or new_stop >= position.average_price:
                raise InvalidThreshold(
                    f"stop_loss {new_stop} must be >= 0 and below average price {position.average_price}"
                )
        if take_profit is not UNSET and take_profit is not None:
            new_take = _to_decimal(take_profit, "take_profit", InvalidThreshold)
            if new_take <= position.average_price:
                raise InvalidThreshold(
                    f"take_profit {new_take} must be above average price {position.average_price}"
                )

        saved = copy.deepcopy(self.positions)
        position.stop_loss = new_stop
        position.take_profit = new_take
        position.updated_at = utcnow()
        position.refresh_state()
        self._write_through(self._restore_positions(saved))
        logger.info(
            f"Protective thresholds set | symbol={symbol} stop_loss={new_stop} "
            f"take_profit={new_take} state={position.state.value}"
        )
        return dataclasses.replace(position)

    def clear_protective_thresholds(self, symbol: str, *, stop_loss: bool = False, take_profit: bool = False) -> Position:
        """Explicitly remove thresholds from a position."""
        position = self.positions.get(symbol)
        if position is None:
            raise NoPosition(f"No open position for {symbol}")

        saved = copy.deepcopy(self.positions)
        if stop_loss:
            position.stop_loss = None
        if take_profit:
            position.take_profit = None
        position.updated_at = utcnow()
        position.refresh_state()
        self._write_through(self._restore_positions(saved))
        logger.info(f"Protective thresholds cleared | symbol={symbol} stop_loss={stop_loss} take_profit={take_profit}")
        return dataclasses.replace(position)

    def rescan_positions(self, snapshot: Mapping[str, Position], *, persist: bool = True) -> RescanReport:
        """Reconcile watches with the authoritative portfolio.

        New positions are adopted with only the thresholds explicitly set on
        them; quantity and average price follow the portfolio; positions that
        are gone or at zero quantity are dropped. Once a watch exists its
        thresholds belong to the store: snapshot thresholds are never copied
        onto it again, so a cleared threshold stays cleared. Running it twice
        with the same snapshot is a no-op.
        """
        report = RescanReport()
        saved = copy.deepcopy(self.positions)

        for symbol, held in snapshot.items():
            if held.quantity <= 0:
                continue
            current = self.positions.get(symbol)
            if current is None:
                self.positions[symbol] = Position(
                    symbol=symbol,
                    quantity=held.quantity,
                    average_price=held.average_price,
                    stop_loss=held.stop_loss,
                    take_profit=held.take_profit,
                    opened_at=held.opened_at,
                )
                report.added.append(symbol)
                continue

            if current.quantity != held.quantity or current.average_price != held.average_price:
                current.quantity = held.quantity
                current.average_price = held.average_price
                current.updated_at = utcnow()
                current.refresh_state()
                report.updated.append(symbol)

        for symbol in list(self.positions):
            held = snapshot.get(symbol)
            if held is None or held.quantity <= 0:
                del self.positions[symbol]
                report.removed.append(symbol)

        if report.changed:
            logger.info(
                f"Positions rescanned | added={report.added} updated={report.updated} removed={report.removed}"
            )
            if persist:
                self._write_through(self._restore_positions(saved))
        return report

    def mark_triggered(self, symbol: str) -> None:
        position = self.positions[symbol]
        position.state = WatchState.TRIGGERED
        position.updated_at = utcnow()

    def complete_trigger(self, symbol: str, remaining_quantity: Decimal) -> WatchState:
        """Apply the executor's outcome: delete on full close, re-arm on partial."""
        position = self.positions.get(symbol)
        if position is None:
            return WatchState.RESOLVED
        if remaining_quantity <= 0:
            position.state = WatchState.RESOLVED
            del self.positions[symbol]
            return WatchState.RESOLVED
        position.quantity = remaining_quantity
        position.updated_at = utcnow()
        position.refresh_state()
        return position.state

    def rearm(self, symbol: str) -> None:
        position = self.positions.get(symbol)
        if position is not None and position.state is WatchState.TRIGGERED:
            position.refresh_state()

    # --- Read-only views ---
    def list_pending(self) -> List[PendingOrder]:
        return sorted(
            (dataclasses.replace(o) for o in self.orders.values() if o.is_pending),
            key=lambda o: o.created_at,
        )

    def list_orders(self, status: Optional[OrderStatus] = None) -> List[PendingOrder]:
        return sorted(
            (dataclasses.replace(o) for o in self.orders.values() if status is None or o.status is status),
            key=lambda o: o.created_at,
        )

    def list_protective(self) -> List[Position]:
        return [
            dataclasses.replace(p)
            for _, p in sorted(self.positions.items())
            if p.has_thresholds
        ]

    def get_order(self, order_id: str) -> PendingOrder:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        return dataclasses.replace(order)

    def get_position(self, symbol: str) -> Optional[Position]:
        position = self.positions.get(symbol)
        return dataclasses.replace(position) if position else None

    def armed_positions(self) -> List[Position]:
        return [p for _, p in sorted(self.positions.items()) if p.armed]

    def pending_orders(self) -> List[PendingOrder]:
        return sorted((o for o in self.orders.values() if o.is_pending), key=lambda o: o.created_at)

    def watched_symbols(self) -> Set[str]:
        symbols = {p.symbol for p in self.positions.values() if p.armed}
        symbols.update(o.symbol for o in self.orders.values() if o.is_pending)
        return symbols
