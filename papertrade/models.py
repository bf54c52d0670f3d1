"""
Watched entities: open positions with protective thresholds and pending limit orders.

Lifecycle:
    POSITION WATCH:
        IDLE (no threshold) ⇄ ARMED → TRIGGERED → RESOLVED (position deleted)
                                              ↘ ARMED (partial close, re-armed)

    PENDING LIMIT ORDER:
        PENDING → FILLED | CANCELLED   (terminal states are immutable)

All prices and quantities are Decimal and are serialized as strings.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class _Unset:
    """Sentinel for 'argument not supplied', distinct from None and Decimal('0')."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class OrderKind(Enum):
    BUY_LIMIT = "BUY_LIMIT"
    SELL_LIMIT = "SELL_LIMIT"


class OrderStatus(Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class WatchState(Enum):
    IDLE = "IDLE"            # open position without thresholds
    ARMED = "ARMED"          # stop-loss and/or take-profit set
    TRIGGERED = "TRIGGERED"  # threshold crossed, sell requested
    RESOLVED = "RESOLVED"    # position closed by the executor


@dataclass
class Position:
    """One open holding per symbol, with optional protective thresholds.

    Attributes:
        symbol: Feed identifier (e.g. "bitcoin"); unique within the portfolio
        quantity: Units held; a position with zero quantity is deleted, not kept
        average_price: Volume-weighted entry price
        stop_loss: Sell-all trigger below average_price (None if unset)
        take_profit: Sell-all trigger above average_price (None if unset)
        state: Watch state maintained by the order monitor
    """

    symbol: str
    quantity: Decimal
    average_price: Decimal
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    state: WatchState = WatchState.IDLE
    opened_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.state in (WatchState.IDLE, WatchState.ARMED):
            self.state = WatchState.ARMED if self.has_thresholds else WatchState.IDLE

    @property
    def has_thresholds(self) -> bool:
        return self.stop_loss is not None or self.take_profit is not None

    @property
    def armed(self) -> bool:
        return self.state is WatchState.ARMED

    def refresh_state(self) -> None:
        """Recompute IDLE/ARMED after a threshold or quantity change."""
        if self.state in (WatchState.IDLE, WatchState.ARMED, WatchState.TRIGGERED):
            self.state = WatchState.ARMED if self.has_thresholds else WatchState.IDLE

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        return (price - self.average_price) * self.quantity

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "symbol": self.symbol,
            "quantity": str(self.quantity),
            "average_price": str(self.average_price),
            "stop_loss": _str(self.stop_loss),
            "take_profit": _str(self.take_profit),
            "state": self.state.value,
            "opened_at": _ts(self.opened_at),
            "updated_at": _ts(self.updated_at),
        }

    @staticmethod
    def from_dict(d: Dict[str, Optional[str]]) -> "Position":
        """Inverse of to_dict.

        Raises:
            KeyError: If required keys are missing
            decimal.InvalidOperation: If values cannot be converted to Decimal
        """
        return Position(
            symbol=d["symbol"],
            quantity=Decimal(d["quantity"]),
            average_price=Decimal(d["average_price"]),
            stop_loss=_dec(d.get("stop_loss")),
            take_profit=_dec(d.get("take_profit")),
            state=WatchState(d.get("state") or WatchState.IDLE.value),
            opened_at=_parse_ts(d.get("opened_at")) or utcnow(),
            updated_at=_parse_ts(d.get("updated_at")) or utcnow(),
        )


def new_order_id() -> str:
    return uuid.uuid4().hex


@dataclass
class PendingOrder:
    """A resting limit order.

    Exactly one sizing field is set: ``amount_quote`` (quote currency to
    spend) for BUY_LIMIT, ``percentage_of_position`` (0 < p <= 100) for
    SELL_LIMIT.
    """

    kind: OrderKind
    symbol: str
    limit_price: Decimal
    amount_quote: Optional[Decimal] = None
    percentage_of_position: Optional[Decimal] = None
    id: str = field(default_factory=new_order_id)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    fill_price: Optional[Decimal] = None

    @property
    def is_pending(self) -> bool:
        return self.status is OrderStatus.PENDING

    def should_fire(self, price: Decimal) -> bool:
        """BUY_LIMIT fires at or below the limit, SELL_LIMIT at or above."""
        if not self.is_pending:
            return False
        if self.kind is OrderKind.BUY_LIMIT:
            return price <= self.limit_price
        return price >= self.limit_price

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "symbol": self.symbol,
            "limit_price": str(self.limit_price),
            "amount_quote": _str(self.amount_quote),
            "percentage_of_position": _str(self.percentage_of_position),
            "status": self.status.value,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
            "resolved_at": _ts(self.resolved_at),
            "fill_price": _str(self.fill_price),
        }

    @staticmethod
    def from_dict(d: Dict[str, Optional[str]]) -> "PendingOrder":
        return PendingOrder(
            id=d["id"],
            kind=OrderKind(d["kind"]),
            symbol=d["symbol"],
            limit_price=Decimal(d["limit_price"]),
            amount_quote=_dec(d.get("amount_quote")),
            percentage_of_position=_dec(d.get("percentage_of_position")),
            status=OrderStatus(d["status"]),
            created_at=_parse_ts(d.get("created_at")) or utcnow(),
            updated_at=_parse_ts(d.get("updated_at")) or utcnow(),
            resolved_at=_parse_ts(d.get("resolved_at")),
            fill_price=_dec(d.get("fill_price")),
        )
