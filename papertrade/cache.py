"""Passive in-process TTL caches for prices, analysis series and market data.

Each tier has a single TTL applied to every key. Expiry is lazy: a read past
``expires_at`` is a miss and purges the entry; ``sweep()`` evicts proactively.
No method performs I/O or blocks.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, Optional

Clock = Callable[[], float]

MARKET_OVERVIEW_KEY = "market_overview"


def price_key(symbol: str) -> str:
    return f"price_{symbol}"


def history_key(symbol: str, days: int, interval: str) -> str:
    return f"price_history_{symbol}_{days}_{interval}"


def multi_price_key(symbols: Iterable[str]) -> str:
    return "multi_prices_" + "_".join(sorted(symbols))


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


@dataclass
class ExpiringTier:
    """One key-value store with a tier-wide time-to-live."""
    name: str
    ttl_seconds: float
    clock: Clock = time.monotonic
    entries: Dict[Hashable, CacheEntry] = field(default_factory=dict)
    hits: int = 0
    misses: int = 0
    expirations: int = 0

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self.entries.get(key)
        if entry is not None and entry.expires_at <= self.clock():
            del self.entries[key]
            self.expirations += 1
            entry = None
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        self.entries[key] = CacheEntry(value=value, expires_at=self.clock() + self.ttl_seconds)

    def delete(self, key: Hashable) -> bool:
        return self.entries.pop(key, None) is not None

    def sweep(self) -> int:
        """Evict every expired entry; return how many were removed."""
        now = self.clock()
        expired = [k for k, e in self.entries.items() if e.expires_at <= now]
        for key in expired:
            del self.entries[key]
        self.expirations += len(expired)
        return len(expired)

    def clear(self) -> int:
        count = len(self.entries)
        self.entries.clear()
        return count

    def __len__(self) -> int:
        return len(self.entries)

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "keys": len(self.entries),
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "hit_rate": (self.hits / lookups * 100) if lookups else 0.0,
        }


class TieredCache:
    """Price, analysis and market tiers, each with its own TTL."""

    def __init__(
        self,
        *,
        price_ttl: float = 30.0,
        analysis_ttl: float = 300.0,
        market_ttl: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self.price = ExpiringTier("price", price_ttl, clock)
        self.analysis = ExpiringTier("analysis", analysis_ttl, clock)
        self.market = ExpiringTier("market", market_ttl, clock)

    @classmethod
    def from_config(cls, config, clock: Clock = time.monotonic) -> "TieredCache":
        return cls(
            price_ttl=config.price_ttl,
            analysis_ttl=config.analysis_ttl,
            market_ttl=config.market_ttl,
            clock=clock,
        )

    @property
    def tiers(self):
        return (self.price, self.analysis, self.market)

    def sweep(self) -> int:
        return sum(tier.sweep() for tier in self.tiers)

    def clear_all(self) -> dict:
        by_type = {tier.name: tier.clear() for tier in self.tiers}
        return {"cleared": sum(by_type.values()), "by_type": by_type}

    def hit_rate(self) -> float:
        hits = sum(t.hits for t in self.tiers)
        lookups = hits + sum(t.misses for t in self.tiers)
        return (hits / lookups * 100) if lookups else 0.0

    def get_stats(self) -> dict:
        return {
            "total_keys": sum(len(t) for t in self.tiers),
            "hits": sum(t.hits for t in self.tiers),
            "misses": sum(t.misses for t in self.tiers),
            "hit_rate": self.hit_rate(),
            "by_cache": {t.name: t.stats() for t in self.tiers},
        }
