from papertrade.cache import ExpiringTier, TieredCache, history_key, multi_price_key, price_key
from papertrade.config import CacheConfig


def test_entry_expires_lazily(clock):
    tier = ExpiringTier("price", 30, clock)
    tier.set("k", 1)

    clock.now += 29
    assert tier.get("k") == 1
    clock.now += 1
    assert tier.get("k") is None
    assert len(tier) == 0
    assert tier.expirations == 1


def test_hits_and_misses_counted(clock):
    tier = ExpiringTier("price", 30, clock)
    assert tier.get("missing") is None
    tier.set("k", "v")
    tier.get("k")
    tier.get("k")

    stats = tier.stats()
    assert stats["hits"] == 2
    assert stats["misses"] == 1
    assert round(stats["hit_rate"], 1) == 66.7


def test_sweep_evicts_only_expired(clock):
    tier = ExpiringTier("analysis", 10, clock)
    tier.set("old", 1)
    clock.now += 5
    tier.set("new", 2)
    clock.now += 6

    assert tier.sweep() == 1
    assert tier.get("new") == 2
    assert tier.get("old") is None


def test_set_overwrites_and_resets_ttl(clock):
    tier = ExpiringTier("price", 10, clock)
    tier.set("k", 1)
    clock.now += 8
    tier.set("k", 2)
    clock.now += 8
    assert tier.get("k") == 2


def test_tiers_are_independent(clock):
    cache = TieredCache(price_ttl=30, analysis_ttl=300, market_ttl=60, clock=clock)
    cache.price.set(price_key("bitcoin"), 1)
    cache.analysis.set(history_key("bitcoin", 7, "daily"), 2)
    cache.market.set("market_overview", 3)

    clock.now += 31
    assert cache.price.get(price_key("bitcoin")) is None
    assert cache.analysis.get(history_key("bitcoin", 7, "daily")) == 2
    assert cache.market.get("market_overview") == 3


def test_clear_all_and_stats(clock):
    cache = TieredCache(clock=clock)
    cache.price.set("a", 1)
    cache.price.set("b", 1)
    cache.market.set("c", 1)
    cache.price.get("a")
    cache.price.get("zzz")

    stats = cache.get_stats()
    assert stats["total_keys"] == 3
    assert stats["hit_rate"] == 50.0

    cleared = cache.clear_all()
    assert cleared["cleared"] == 3
    assert cleared["by_type"]["price"] == 2
    assert cache.get_stats()["total_keys"] == 0


def test_from_config(clock):
    cache = TieredCache.from_config(CacheConfig(price_ttl=5, analysis_ttl=50, market_ttl=20), clock=clock)
    assert cache.price.ttl_seconds == 5
    assert cache.analysis.ttl_seconds == 50
    assert cache.market.ttl_seconds == 20


def test_multi_price_key_is_order_independent():
    assert multi_price_key(["eth", "btc"]) == multi_price_key(["btc", "eth"])
