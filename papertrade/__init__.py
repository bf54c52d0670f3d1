"""
Paper-Trading Order Monitor.

Watches open positions and resting limit orders against a public price feed
and executes against a simulated portfolio:
- Stop-loss / take-profit protective sells (stop-loss wins when both cross)
- BUY_LIMIT / SELL_LIMIT orders that fire once and are never re-evaluated
- Cache-first price lookups with sliding-window rate limiting and backoff
- Write-then-acknowledge persistence with SQLite + restart recovery
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    models: Position, PendingOrder and watch/order states
    order_store: Order and threshold operations with validation
    monitor: Periodic tick loop evaluating triggers
    execution: Executor interface and paper portfolio
    prices: Cache-first price service
    feed_client: Rate-limited HTTP client with retry/backoff
    rate_limit_policy: Sliding window admission control
    cache: TTL cache tiers
    persistence_sqlite: Snapshot persistence
    notifier: Trigger notifications (log, Telegram)
    config: Configuration loading

Example:
    >>> from papertrade.order_store import OrderStore
    >>> from papertrade.persistence_sqlite import SQLitePersistence
    >>> from papertrade.execution import PaperPortfolio, PaperExecutor
    >>> from papertrade.monitor import OrderMonitor
    >>>
    >>> store = OrderStore(SQLitePersistence("data/orders.db"))
    >>> store.load()
    >>> portfolio = PaperPortfolio()
    >>> monitor = OrderMonitor(store, prices, PaperExecutor(portfolio), portfolio=portfolio)
"""

__version__ = "0.1.0"
__all__ = [
    "models",
    "order_store",
    "monitor",
    "execution",
    "prices",
    "feed_client",
    "rate_limit_policy",
    "cache",
    "persistence_sqlite",
    "db_migrations",
    "notifier",
    "config",
    "logging_setup",
]
