"""
pNode Crawler - Configuration

All runtime settings come from environment variables (optionally loaded
from a .env file by the CLI). Durations are given in milliseconds in the
environment and exposed in seconds.

Environment Variables:
    BOOTSTRAP_NODE_URL=http://173.212.207.32:6000/rpc
    STATS_PORT=6000
    RPC_TIMEOUT_MS=3000
    DIRECTORY_TIMEOUT_MS=10000
    SYNC_INTERVAL_MS=60000
    INITIAL_SYNC_DELAY_MS=5000
    SYNC_CYCLE_TIMEOUT_MS=300000
    STATS_CONCURRENCY=30
    STATS_MAX_ATTEMPTS=2
    STATS_BACKOFF_MS=500
    STALE_RETENTION_DAYS=7
    GEO_BATCH_URL=http://ip-api.com/batch?fields=...
    GEO_BATCH_SIZE=100
    GEO_BATCH_DELAY_MS=1500
    GEO_TIMEOUT_MS=10000
"""

import os
from dataclasses import asdict, dataclass
from typing import Any

DEFAULT_BOOTSTRAP_URL = "http://173.212.207.32:6000/rpc"
DEFAULT_GEO_BATCH_URL = (
    "http://ip-api.com/batch"
    "?fields=status,query,country,countryCode,city,regionName,timezone,lat,lon"
)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_ms(name: str, default_ms: int, minimum_ms: int = 0) -> float:
    return _env_int(name, default_ms, minimum_ms) / 1000.0


@dataclass(frozen=True)
class CrawlerConfig:
    """Settings for the directory client, prober, geo resolver and engine."""

    # Directory
    bootstrap_url: str = DEFAULT_BOOTSTRAP_URL
    directory_timeout: float = 10.0

    # Stats probing
    stats_port: int = 6000
    rpc_timeout: float = 3.0
    stats_concurrency: int = 30
    stats_max_attempts: int = 2
    stats_backoff: float = 0.5

    # Scheduling
    sync_interval: float = 60.0
    initial_sync_delay: float = 5.0
    cycle_timeout: float = 300.0
    stale_retention_days: int = 7

    # Geolocation
    geo_batch_url: str = DEFAULT_GEO_BATCH_URL
    geo_batch_size: int = 100
    geo_batch_delay: float = 1.5
    geo_timeout: float = 10.0

    def __post_init__(self):
        if self.stats_concurrency < 1:
            raise ValueError("stats_concurrency must be at least 1")
        if not 1 <= self.geo_batch_size <= 100:
            raise ValueError("geo_batch_size must be between 1 and 100")
        if self.sync_interval <= 0:
            raise ValueError("sync_interval must be positive")

    @classmethod
    def from_env(cls) -> "CrawlerConfig":
        """Create configuration from environment variables."""
        return cls(
            bootstrap_url=os.getenv("BOOTSTRAP_NODE_URL") or DEFAULT_BOOTSTRAP_URL,
            directory_timeout=_env_ms("DIRECTORY_TIMEOUT_MS", 10000, 1),
            stats_port=_env_int("STATS_PORT", 6000, 1),
            rpc_timeout=_env_ms("RPC_TIMEOUT_MS", 3000, 1),
            stats_concurrency=_env_int("STATS_CONCURRENCY", 30, 1),
            stats_max_attempts=_env_int("STATS_MAX_ATTEMPTS", 2, 1),
            stats_backoff=_env_ms("STATS_BACKOFF_MS", 500),
            sync_interval=_env_ms("SYNC_INTERVAL_MS", 60000, 1),
            initial_sync_delay=_env_ms("INITIAL_SYNC_DELAY_MS", 5000),
            cycle_timeout=_env_ms("SYNC_CYCLE_TIMEOUT_MS", 300000, 1),
            stale_retention_days=_env_int("STALE_RETENTION_DAYS", 7),
            geo_batch_url=os.getenv("GEO_BATCH_URL") or DEFAULT_GEO_BATCH_URL,
            geo_batch_size=_env_int("GEO_BATCH_SIZE", 100, 1),
            geo_batch_delay=_env_ms("GEO_BATCH_DELAY_MS", 1500),
            geo_timeout=_env_ms("GEO_TIMEOUT_MS", 10000, 1),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
