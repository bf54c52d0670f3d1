"""Configuration loader for the paper-trading monitor.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import yaml


@dataclass
class FeedConfig:
    """Price feed endpoint, rate-limit and retry settings."""
    base_url: str = "https://api.coingecko.com/api/v3"
    api_key: Optional[str] = None
    quote_currency: str = "usd"
    timeout: float = 10.0
    max_requests_per_window: int = 10
    window_seconds: float = 60.0
    min_interval_seconds: float = 4.0
    safety_buffer_seconds: float = 0.1
    max_retries: int = 5
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0


@dataclass
class CacheConfig:
    """Time-to-live per cache tier, in seconds."""
    price_ttl: float = 30.0
    analysis_ttl: float = 300.0
    market_ttl: float = 60.0


@dataclass
class MonitorConfig:
    """Order monitor loop settings."""
    interval_seconds: float = 15.0
    degraded_after_failures: int = 5
    symbols: List[str] = field(default_factory=lambda: [
        "bitcoin", "ethereum", "cardano", "polkadot", "chainlink",
        "solana", "matic-network", "avalanche-2", "uniswap", "aave",
    ])


@dataclass
class TradingConfig:
    """Paper portfolio parameters."""
    initial_balance: Decimal = Decimal("10000")
    fee_rate: Decimal = Decimal("0.001")


@dataclass
class PersistenceConfig:
    """Database and log file locations."""
    db_path: str = "data/orders.db"
    log_file: str = "logs/papertrade.log"
    trades_file: Optional[str] = "logs/trades.jsonl"
    log_level: str = "INFO"


@dataclass
class NotifierConfig:
    """Telegram notification settings; disabled when token or chat id is missing."""
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    timeout: float = 5.0

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


@dataclass
class AppConfig:
    """Complete configuration."""
    feed: FeedConfig = field(default_factory=FeedConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "AppConfig":
        """Load configuration from YAML file with env var interpolation.

        Unknown sections are ignored; missing sections fall back to defaults.

        Example YAML:
            feed:
              api_key: "${COINGECKO_API_KEY}"
              max_requests_per_window: 10
            monitor:
              interval_seconds: 15
            persistence:
              db_path: "${STATE_DIR}/orders.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        trading = TradingConfig(**{
            k: Decimal(str(v)) for k, v in (data.get("trading") or {}).items()
        })
        return cls(
            feed=FeedConfig(**(data.get("feed") or {})),
            cache=CacheConfig(**(data.get("cache") or {})),
            monitor=MonitorConfig(**(data.get("monitor") or {})),
            trading=trading,
            persistence=PersistenceConfig(**(data.get("persistence") or {})),
            notifier=NotifierConfig(**(data.get("notifier") or {})),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = asdict(self)
        data["trading"] = {k: str(v) for k, v in data["trading"].items()}

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
