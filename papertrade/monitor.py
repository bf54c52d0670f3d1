"""Periodic evaluation of protective thresholds and pending limit orders.

Each tick:
    1. Reconcile watches with the portfolio (if a snapshot provider is set)
    2. Fetch current prices for every watched symbol concurrently
    3. Fire stop-loss / take-profit sells, then pending limit orders
    4. Flush the order store once
    5. Notify one TriggerEvent per fired trigger

Ticks never overlap: a tick that comes due while one is still running is
skipped and counted.
"""
import asyncio
import inspect
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from .execution import ExecutionResult, OrderExecutor, PortfolioSnapshotProvider
from .logging_setup import logger
from .models import OrderKind, PendingOrder, Position, utcnow
from .notifier import Notifier, TriggerEvent
from .order_store import OrderError, OrderStore
from .persistence_sqlite import PersistenceError
from .prices import PriceService

FULL_POSITION = Decimal("100")


class OrderMonitor:
    def __init__(
        self,
        store: OrderStore,
        prices: PriceService,
        executor: OrderExecutor,
        *,
        notifier: Optional[Notifier] = None,
        portfolio: Optional[PortfolioSnapshotProvider] = None,
        interval_seconds: float = 15.0,
        degraded_after_failures: int = 5,
    ):
        self.store = store
        self.prices = prices
        self.executor = executor
        self.notifier = notifier
        self.portfolio = portfolio
        self.interval = interval_seconds
        self.degraded_after_failures = degraded_after_failures

        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

        self.ticks = 0
        self.ticks_skipped = 0
        self.triggers_fired = 0
        self.execution_errors = 0
        self.persistence_errors = 0
        self.notification_errors = 0
        self.resolution_conflicts = 0
        self.last_tick_at: Optional[datetime] = None
        self._failures: Dict[str, int] = defaultdict(int)
        self.degraded: Set[str] = set()

    @classmethod
    def from_config(
        cls, config, store: OrderStore, prices: PriceService, executor: OrderExecutor, **kwargs
    ) -> "OrderMonitor":
        return cls(
            store,
            prices,
            executor,
            interval_seconds=config.interval_seconds,
            degraded_after_failures=config.degraded_after_failures,
            **kwargs,
        )

    # --- Lifecycle ---
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Spawn the periodic loop; the first tick runs immediately."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Order monitor started | interval={self.interval}s")

    async def stop(self) -> None:
        """Stop the loop, wait for an in-flight tick and flush once more."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._inflight is not None and not self._inflight.done():
            await asyncio.gather(self._inflight, return_exceptions=True)
        await self._flush()
        logger.info(f"Order monitor stopped | ticks={self.ticks} triggers={self.triggers_fired}")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            if self._inflight is None or self._inflight.done():
                self._inflight = asyncio.create_task(self._guarded_tick())
            else:
                self.ticks_skipped += 1
                logger.warning("Tick skipped | previous tick still running")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Monitor tick failed")

    # --- Tick ---
    async def tick(self) -> bool:
        """Run one evaluation pass. Returns False if a tick was already running."""
        if self._tick_lock.locked():
            self.ticks_skipped += 1
            logger.warning("Tick skipped | previous tick still running")
            return False
        async with self._tick_lock:
            await self._run_tick()
        return True

    async def _run_tick(self) -> None:
        self.ticks += 1
        if self.portfolio is not None:
            self.store.rescan_positions(self.portfolio.snapshot(), persist=False)

        symbols = sorted(self.store.watched_symbols())
        prices = await self._fetch_prices(symbols) if symbols else {}

        events: List[TriggerEvent] = []
        for position in self.store.armed_positions():
            price = prices.get(position.symbol)
            # thresholds may have been cleared while an earlier sell was awaited
            if price is None or not position.armed:
                continue
            event = await self._evaluate_position(position, price)
            if event:
                events.append(event)

        for order in self.store.pending_orders():
            price = prices.get(order.symbol)
            # cancelled while an earlier trigger was executing
            if price is None or not order.is_pending or not order.should_fire(price):
                continue
            event = await self._fill_order(order, price)
            if event:
                events.append(event)

        if events:
            self.triggers_fired += len(events)
        await self._flush()
        await self._notify(events)
        self.last_tick_at = utcnow()
        logger.debug(f"Tick complete | symbols={len(symbols)} priced={len(prices)} triggers={len(events)}")

    async def _fetch_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        symbols = list(symbols)
        results = await asyncio.gather(
            *(self.prices.get_current_price(s) for s in symbols), return_exceptions=True
        )
        prices: Dict[str, Decimal] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                self._record_failure(symbol, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                self._record_success(symbol)
                prices[symbol] = result.price
        return prices

    def _record_failure(self, symbol: str, error: Exception) -> None:
        self._failures[symbol] += 1
        count = self._failures[symbol]
        logger.warning(f"Price unavailable, skipping this tick | symbol={symbol} failures={count} error={error}")
        if count >= self.degraded_after_failures and symbol not in self.degraded:
            self.degraded.add(symbol)
            logger.error(f"Symbol degraded | symbol={symbol} consecutive_failures={count}")

    def _record_success(self, symbol: str) -> None:
        self._failures.pop(symbol, None)
        if symbol in self.degraded:
            self.degraded.discard(symbol)
            logger.info(f"Symbol recovered | symbol={symbol}")

    async def _evaluate_position(self, position: Position, price: Decimal) -> Optional[TriggerEvent]:
        # stop-loss wins when both thresholds are crossed
        if position.stop_loss is not None and price <= position.stop_loss:
            trigger = "STOP_LOSS"
        elif position.take_profit is not None and price >= position.take_profit:
            trigger = "TAKE_PROFIT"
        else:
            return None

        symbol = position.symbol
        self.store.mark_triggered(symbol)
        logger.info(
            f"{trigger} triggered | symbol={symbol} price={price} "
            f"stop_loss={position.stop_loss} take_profit={position.take_profit}"
        )
        result = await self._execute(self.executor.execute_sell, symbol, FULL_POSITION, price)
        if result is None:
            self.store.rearm(symbol)
            return None

        state = self.store.complete_trigger(symbol, result.remaining_quantity)
        logger.info(f"{trigger} executed | symbol={symbol} qty={result.quantity} pnl={result.realized_pnl} state={state.value}")
        return TriggerEvent(trigger, symbol, price, quantity=result.quantity, pnl=result.realized_pnl)

    async def _fill_order(self, order: PendingOrder, price: Decimal) -> Optional[TriggerEvent]:
        if order.kind is OrderKind.BUY_LIMIT:
            result = await self._execute(self.executor.execute_buy, order.symbol, order.amount_quote, price)
        else:
            result = await self._execute(self.executor.execute_sell, order.symbol, order.percentage_of_position, price)
        if result is None:
            return None

        try:
            self.store.mark_filled(order.id, price, persist=False)
        except OrderError as e:
            # resolved (e.g. cancelled) while the executor was awaited; the trade already happened
            self.resolution_conflicts += 1
            logger.error(
                f"Limit order executed after it was resolved | id={order.id} kind={order.kind.value} "
                f"symbol={order.symbol} price={price} qty={result.quantity} error={e}"
            )
        else:
            logger.info(
                f"Limit order filled | id={order.id} kind={order.kind.value} symbol={order.symbol} "
                f"limit={order.limit_price} price={price} qty={result.quantity}"
            )
        return TriggerEvent(
            order.kind.value, order.symbol, price, quantity=result.quantity, pnl=result.realized_pnl, order_id=order.id
        )

    async def _execute(self, fn, *args) -> Optional[ExecutionResult]:
        # executors may be sync or async
        try:
            if inspect.iscoroutinefunction(fn):
                return await fn(*args)
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            self.execution_errors += 1
            logger.error(f"Execution failed, will retry next tick | call={fn.__name__} args={args} error={e!r}")
            return None

    async def _flush(self) -> None:
        try:
            orders, positions = self.store.snapshot()
            await asyncio.to_thread(self.store.write, orders, positions)
        except PersistenceError as e:
            self.persistence_errors += 1
            logger.error(f"ORDER STATE NOT PERSISTED, keeping in-memory state | error={e}")

    async def _notify(self, events: List[TriggerEvent]) -> None:
        if self.notifier is None:
            return
        for event in events:
            try:
                await self.notifier.notify(event)
            except Exception as e:
                self.notification_errors += 1
                logger.warning(f"Notification failed | event={event.describe()} error={e!r}")

    # --- Reporting ---
    def list_pending(self) -> List[PendingOrder]:
        return self.store.list_pending()

    def list_protective(self) -> List[Position]:
        return self.store.list_protective()

    def get_stats(self) -> dict:
        feed = self.prices.get_stats()
        return {
            "running": self.running,
            "ticks": self.ticks,
            "ticks_skipped": self.ticks_skipped,
            "triggers_fired": self.triggers_fired,
            "execution_errors": self.execution_errors,
            "persistence_errors": self.persistence_errors,
            "notification_errors": self.notification_errors,
            "resolution_conflicts": self.resolution_conflicts,
            "degraded_symbols": sorted(self.degraded),
            "consecutive_failures": dict(self._failures),
            "pending_orders": len(self.store.pending_orders()),
            "protective_positions": len(self.store.list_protective()),
            "rate_limit_hits": feed.get("rate_limit_hits", 0),
            "cache_hit_rate": feed.get("cache", {}).get("hit_rate", 0.0),
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }
