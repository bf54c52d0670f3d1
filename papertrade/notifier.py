"""Trigger notifications: log line always, Telegram when configured."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

import aiohttp

from .logging_setup import logger
from .models import utcnow

TELEGRAM_API = "https://api.telegram.org"


@dataclass(frozen=True)
class TriggerEvent:
    """One fired trigger, emitted after the tick's state was flushed.

    ``type`` is one of STOP_LOSS, TAKE_PROFIT, BUY_LIMIT, SELL_LIMIT.
    """

    type: str
    symbol: str
    trigger_price: Decimal
    quantity: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    order_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def describe(self) -> str:
        parts = [f"{self.type} {self.symbol} @ {self.trigger_price}"]
        if self.quantity is not None:
            parts.append(f"qty {self.quantity}")
        if self.pnl is not None:
            parts.append(f"P&L {self.pnl.quantize(Decimal('0.01'))}")
        if self.order_id:
            parts.append(f"order {self.order_id}")
        return " | ".join(parts)


class Notifier(ABC):
    @abstractmethod
    async def notify(self, event: TriggerEvent) -> None:
        """Deliver one event. May raise; the monitor logs and moves on."""


class LoggingNotifier(Notifier):
    """Writes trigger events to the trades log sink."""

    async def notify(self, event: TriggerEvent) -> None:
        logger.bind(trade=True).info(
            f"Trigger fired | type={event.type} symbol={event.symbol} price={event.trigger_price} "
            f"qty={event.quantity} pnl={event.pnl} order_id={event.order_id}"
        )


_EMOJI = {
    "STOP_LOSS": "🛑",
    "TAKE_PROFIT": "🎯",
    "BUY_LIMIT": "🟢",
    "SELL_LIMIT": "🔴",
}


class TelegramNotifier(Notifier):
    """Sends trigger events to a Telegram chat via the Bot API.

    Delivery failures are logged and swallowed so a Telegram outage never
    affects order processing.
    """

    def __init__(self, bot_token: str, chat_id: str, *, timeout: float = 10.0, fallback: Optional[Notifier] = None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self.fallback = fallback or LoggingNotifier()
        self.sent = 0
        self.failed = 0

    @classmethod
    def from_config(cls, config) -> Optional["TelegramNotifier"]:
        if not config.telegram_enabled:
            return None
        return cls(config.telegram_bot_token, config.telegram_chat_id, timeout=config.timeout)

    def format_message(self, event: TriggerEvent) -> str:
        icon = _EMOJI.get(event.type, "🔔")
        lines = [
            f"{icon} *{event.type.replace('_', ' ').title()}* triggered",
            f"Symbol: `{event.symbol.upper()}`",
            f"Price: ${event.trigger_price}",
        ]
        if event.quantity is not None:
            lines.append(f"Quantity: {event.quantity}")
        if event.pnl is not None:
            lines.append(f"P&L: ${event.pnl.quantize(Decimal('0.01'))}")
        if event.order_id:
            lines.append(f"Order: `{event.order_id}`")
        lines.append(f"Time: {event.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        return "\n".join(lines)

    async def send_message(self, text: str) -> bool:
        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        logger.warning(f"Telegram send failed | status={resp.status} body={body[:200]}")
                        self.failed += 1
                        return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Telegram send failed | error={e!r}")
            self.failed += 1
            return False
        self.sent += 1
        return True

    async def notify(self, event: TriggerEvent) -> None:
        await self.fallback.notify(event)
        await self.send_message(self.format_message(event))
