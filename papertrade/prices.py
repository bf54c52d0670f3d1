"""Cache-first price lookups on top of the rate-limited feed client."""
import dataclasses
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cache import MARKET_OVERVIEW_KEY, TieredCache, history_key, multi_price_key, price_key
from .feed_client import FeedError, FeedErrorKind, FeedRequest, RateLimitedFeedClient
from .logging_setup import logger


class SimplePriceEntry(BaseModel):
    """One coin from the ``/simple/price`` payload, keys already de-prefixed."""

    model_config = ConfigDict(frozen=True)

    price: Decimal = Field(gt=0)
    change_24h: Optional[Decimal] = None
    volume_24h: Optional[Decimal] = None
    market_cap: Optional[Decimal] = None
    last_updated_at: Optional[int] = None


class MarketChart(BaseModel):
    """``/coins/{id}/market_chart`` payload: ``[timestamp_ms, value]`` pairs."""

    model_config = ConfigDict(frozen=True)

    prices: List[Tuple[int, Decimal]]
    total_volumes: List[Tuple[int, Decimal]] = []
    market_caps: List[Tuple[int, Decimal]] = []


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: Decimal
    as_of: datetime
    change_24h: Optional[Decimal] = None
    volume_24h: Optional[Decimal] = None
    market_cap: Optional[Decimal] = None
    source: str = "api"


@dataclass(frozen=True)
class PriceSeries:
    symbol: str
    days: int
    interval: str
    points: List[Tuple[datetime, Decimal]]
    volumes: List[Tuple[datetime, Decimal]] = field(default_factory=list)
    fetched_at: Optional[datetime] = None


def _utc_from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class PriceService:
    """Current prices and historical series with cache-first semantics.

    A cache hit returns without touching the feed; a miss suspends on the
    feed client (and its admission control and retries) and populates the
    relevant tier before returning.
    """

    def __init__(
        self,
        client: RateLimitedFeedClient,
        cache: TieredCache,
        *,
        quote_currency: str = "usd",
        default_symbols: Sequence[str] = (),
    ):
        self.client = client
        self.cache = cache
        self.quote_currency = quote_currency
        self.default_symbols = list(default_symbols)

    def _normalize_entry(self, symbol: str, raw: Any) -> PriceQuote:
        vs = self.quote_currency
        if not isinstance(raw, dict) or vs not in raw:
            raise FeedError(FeedErrorKind.MALFORMED, f"No {vs} price for {symbol}")
        try:
            entry = SimplePriceEntry(
                price=raw[vs],
                change_24h=raw.get(f"{vs}_24h_change"),
                volume_24h=raw.get(f"{vs}_24h_vol"),
                market_cap=raw.get(f"{vs}_market_cap"),
                last_updated_at=raw.get("last_updated_at"),
            )
        except ValidationError as e:
            raise FeedError(FeedErrorKind.MALFORMED, f"Invalid price payload for {symbol}: {e}")

        as_of = (
            datetime.fromtimestamp(entry.last_updated_at, tz=timezone.utc)
            if entry.last_updated_at
            else datetime.now(timezone.utc)
        )
        return PriceQuote(
            symbol=symbol,
            price=entry.price,
            as_of=as_of,
            change_24h=entry.change_24h,
            volume_24h=entry.volume_24h,
            market_cap=entry.market_cap,
        )

    async def _fetch_simple_prices(self, symbols: Sequence[str], *, extended: bool) -> Dict[str, Any]:
        params = {
            "ids": ",".join(symbols),
            "vs_currencies": self.quote_currency,
            "include_24hr_change": "true",
            "include_last_updated_at": "true",
        }
        if extended:
            params["include_24hr_vol"] = "true"
            params["include_market_cap"] = "true"
        context = f"price of {symbols[0]}" if len(symbols) == 1 else f"prices of {len(symbols)} coins"
        data = await self.client.fetch(FeedRequest("/simple/price", params, context=context))
        if not isinstance(data, dict):
            raise FeedError(FeedErrorKind.MALFORMED, f"Unexpected /simple/price payload: {type(data).__name__}")
        return data

    async def get_current_price(self, symbol: str) -> PriceQuote:
        """Return the current price of ``symbol``, from cache when fresh.

        Raises:
            FeedError: UPSTREAM if the feed does not know the symbol, MALFORMED
                for an unusable payload, or the last retryable error
        """
        cached = self.cache.price.get(price_key(symbol))
        if cached is not None:
            return dataclasses.replace(cached, source="cache")

        data = await self._fetch_simple_prices([symbol], extended=False)
        if symbol not in data:
            raise FeedError(FeedErrorKind.UPSTREAM, f"Unknown symbol: {symbol}")

        quote = self._normalize_entry(symbol, data[symbol])
        self.cache.price.set(price_key(symbol), quote)
        logger.debug(f"Price fetched | symbol={symbol} price={quote.price}")
        return quote

    async def get_multiple_prices(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        """Batch lookup in a single feed request; also refreshes per-symbol entries.

        Symbols the feed does not return are omitted from the result.
        """
        symbols = sorted(set(symbols))
        if not symbols:
            return {}
        key = multi_price_key(symbols)
        cached = self.cache.price.get(key)
        if cached is not None:
            return {s: dataclasses.replace(q, source="cache") for s, q in cached.items()}

        data = await self._fetch_simple_prices(symbols, extended=True)
        quotes = {}
        for symbol in symbols:
            if symbol not in data:
                logger.warning(f"Symbol missing from batch response | symbol={symbol}")
                continue
            quotes[symbol] = self._normalize_entry(symbol, data[symbol])
            self.cache.price.set(price_key(symbol), quotes[symbol])

        self.cache.price.set(key, quotes)
        return quotes

    async def get_historical_series(self, symbol: str, days: int = 7, interval: str = "daily") -> PriceSeries:
        """Return ordered (timestamp, price) pairs for the trailing ``days``."""
        key = history_key(symbol, days, interval)
        cached = self.cache.analysis.get(key)
        if cached is not None:
            return cached

        params = {
            "vs_currency": self.quote_currency,
            "days": days,
            "interval": "hourly" if interval == "hourly" and days <= 1 else "daily",
        }
        data = await self.client.fetch(
            FeedRequest(f"/coins/{symbol}/market_chart", params, context=f"history of {symbol}")
        )
        try:
            chart = MarketChart.model_validate(data)
        except ValidationError as e:
            raise FeedError(FeedErrorKind.MALFORMED, f"Invalid market chart for {symbol}: {e}")

        series = PriceSeries(
            symbol=symbol,
            days=days,
            interval=interval,
            points=sorted((_utc_from_ms(ts), price) for ts, price in chart.prices),
            volumes=sorted((_utc_from_ms(ts), vol) for ts, vol in chart.total_volumes),
            fetched_at=datetime.now(timezone.utc),
        )
        self.cache.analysis.set(key, series)
        return series

    async def get_market_overview(self, symbols: Optional[Sequence[str]] = None) -> dict:
        """Aggregate 24h movement across ``symbols`` (defaults to the configured list)."""
        cached = self.cache.market.get(MARKET_OVERVIEW_KEY)
        if cached is not None:
            return cached

        quotes = await self.get_multiple_prices(symbols or self.default_symbols)
        overview = sorted(quotes.values(), key=lambda q: q.market_cap or Decimal("0"), reverse=True)
        changes = [q.change_24h or Decimal("0") for q in overview]

        result = {
            "overview": overview,
            "summary": {
                "total_market_cap": sum((q.market_cap or Decimal("0") for q in overview), Decimal("0")),
                "total_volume_24h": sum((q.volume_24h or Decimal("0") for q in overview), Decimal("0")),
                "gainers": sum(1 for c in changes if c > 0),
                "losers": sum(1 for c in changes if c < 0),
                "neutral": sum(1 for c in changes if abs(c) < 1),
                "avg_change": (sum(changes, Decimal("0")) / len(changes)) if changes else Decimal("0"),
            },
            "timestamp": datetime.now(timezone.utc),
            "coins_analyzed": len(overview),
        }
        self.cache.market.set(MARKET_OVERVIEW_KEY, result)
        return result

    def get_stats(self) -> dict:
        return {
            **self.client.stats(),
            "cache": self.cache.get_stats(),
        }

    async def health_check(self, probe_symbol: str = "bitcoin") -> dict:
        """Probe the feed; never raises."""
        started = time.monotonic()
        try:
            await self.get_current_price(probe_symbol)
        except (FeedError, RuntimeError) as e:
            logger.warning(f"Price feed health check failed | error={e}")
            return {"status": "unhealthy", "api_connectivity": "failed", "error": str(e)}

        utilization = self.client.admission.stats()["utilization_pct"]
        if utilization >= 90:
            rate_limit_status = "critical"
        elif utilization >= 70:
            rate_limit_status = "warning"
        else:
            rate_limit_status = "ok"
        return {
            "status": "healthy",
            "api_connectivity": "ok",
            "response_time_ms": round((time.monotonic() - started) * 1000, 1),
            "rate_limit_status": rate_limit_status,
            "rate_limit_utilization_pct": utilization,
            "retries": self.client.retries,
            "rate_limit_hits": self.client.rate_limit_hits,
        }
