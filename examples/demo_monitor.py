"""End-to-end demo of the paper-trading order monitor.

Shows:
1. Loading configuration (config.yaml if present, defaults otherwise)
2. Restoring the order store from SQLite
3. Wiring the rate-limited price feed, cache and paper portfolio
4. Placing a buy-limit order and protective thresholds
5. Running the monitor loop until Ctrl-C or --duration elapses
6. Structured logging
"""
import argparse
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path so we can import papertrade
sys.path.insert(0, str(Path(__file__).parent.parent))

from papertrade.cache import TieredCache
from papertrade.config import AppConfig
from papertrade.execution import PaperExecutor, PaperPortfolio
from papertrade.feed_client import RateLimitedFeedClient
from papertrade.logging_setup import logger, setup_logging
from papertrade.monitor import OrderMonitor
from papertrade.notifier import LoggingNotifier, TelegramNotifier
from papertrade.order_store import OrderStore
from papertrade.persistence_sqlite import SQLitePersistence
from papertrade.prices import PriceService


async def main(duration: float):
    config_file = Path(__file__).parent.parent / "config.yaml"
    config = AppConfig.from_yaml(str(config_file)) if config_file.exists() else AppConfig()

    setup_logging(
        log_file=config.persistence.log_file,
        level=config.persistence.log_level,
        enable_console=True,
        trades_file=config.persistence.trades_file,
    )
    logger.info("=== Paper Trading Monitor Demo ===")

    persistence = SQLitePersistence(Path(config.persistence.db_path))
    store = OrderStore(persistence)
    store.load()

    portfolio = PaperPortfolio(config.trading.initial_balance, config.trading.fee_rate)
    notifier = TelegramNotifier.from_config(config.notifier) or LoggingNotifier()

    async with RateLimitedFeedClient.from_config(config.feed) as client:
        prices = PriceService(
            client,
            TieredCache.from_config(config.cache),
            quote_currency=config.feed.quote_currency,
            default_symbols=config.monitor.symbols,
        )

        health = await prices.health_check()
        logger.info(f"Feed health | status={health['status']}")
        if health["status"] != "healthy":
            persistence.close()
            return

        # Seed a position and a buy-limit 2% under the market
        btc = await prices.get_current_price("bitcoin")
        portfolio.buy("bitcoin", Decimal("1000"), btc.price)
        store.rescan_positions(portfolio.snapshot())
        store.set_protective_thresholds(
            "bitcoin",
            stop_loss=(btc.price * Decimal("0.97")).quantize(Decimal("0.01")),
            take_profit=(btc.price * Decimal("1.05")).quantize(Decimal("0.01")),
        )
        eth = await prices.get_current_price("ethereum")
        store.add_pending_order(
            "BUY_LIMIT", "ethereum", (eth.price * Decimal("0.98")).quantize(Decimal("0.01")),
            amount_quote=Decimal("500"),
        )

        monitor = OrderMonitor.from_config(
            config.monitor, store, prices, PaperExecutor(portfolio), notifier=notifier, portfolio=portfolio
        )
        await monitor.start()
        try:
            await asyncio.sleep(duration)
        except asyncio.CancelledError:
            pass
        finally:
            await monitor.stop()

        stats = monitor.get_stats()
        logger.info("=== Demo Complete ===")
        logger.info(f"  Ticks: {stats['ticks']} (skipped {stats['ticks_skipped']})")
        logger.info(f"  Triggers fired: {stats['triggers_fired']}")
        logger.info(f"  Pending orders: {stats['pending_orders']}")
        logger.info(f"  Degraded symbols: {stats['degraded_symbols']}")
        logger.info(f"  Cache hit rate: {stats['cache_hit_rate']:.1f}%")
        logger.info(f"  Balance: {portfolio.balance}")

    persistence.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the paper-trading order monitor")
    parser.add_argument("--duration", type=float, default=120.0, help="Seconds to run before stopping")
    args = parser.parse_args()
    try:
        asyncio.run(main(args.duration))
    except KeyboardInterrupt:
        pass
