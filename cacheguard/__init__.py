"""Resilience and caching layer between a data service and flaky upstreams.

Typical use:

    context = ResilienceContext.create(Settings.from_env())
    value = await context.safe_fetch(
        CacheKeyBuilder.token_price("coingecko", "usd-coin"),
        lambda: client.get_json("/simple/price", {"ids": "usd-coin"}),
        upstream="coingecko",
        data_type=DataType.TOKEN_PRICE,
    )
"""

from cacheguard.cache import CacheKeyBuilder, CacheManager, DataType
from cacheguard.config import UPSTREAM_PRESETS, Settings, UpstreamConfig
from cacheguard.orchestration import ResilienceContext, SafeFetcher
from cacheguard.resilience import (
    CacheGuardError,
    CircuitOpenError,
    ConfigurationError,
    RequestQueue,
    UpstreamError,
    UpstreamTimeoutError,
)

__version__ = "0.1.0"

__all__ = [
    "CacheGuardError",
    "CacheKeyBuilder",
    "CacheManager",
    "CircuitOpenError",
    "ConfigurationError",
    "DataType",
    "RequestQueue",
    "ResilienceContext",
    "SafeFetcher",
    "Settings",
    "UPSTREAM_PRESETS",
    "UpstreamConfig",
    "UpstreamError",
    "UpstreamTimeoutError",
]
