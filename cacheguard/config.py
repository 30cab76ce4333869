"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults, plus the per-upstream resilience presets.
"""

import os
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


class UpstreamConfig(BaseModel):
    """Resilience knobs for one upstream provider.

    Supplied at construction time and immutable afterwards. Durations are
    in seconds.

    Attributes:
        concurrency: Maximum simultaneously in-flight calls.
        requests_per_second: Maximum call starts per second.
        retry_attempts: Retries after the first attempt.
        base_delay: Backoff base delay.
        max_delay: Backoff cap, applied before jitter.
        circuit_threshold: Consecutive failures that open the circuit.
        circuit_timeout: Cooldown before a half-open probe.
        coalesce: Share one execution between identical in-flight keys.
    """

    model_config = ConfigDict(frozen=True)

    concurrency: int = Field(default=5, ge=1)
    requests_per_second: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    circuit_threshold: int = Field(default=5, ge=1)
    circuit_timeout: float = Field(default=60.0, gt=0)
    coalesce: bool = True

    @model_validator(mode="after")
    def _check_delays(self) -> "UpstreamConfig":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


# Presets mirroring the data service's providers
UPSTREAM_PRESETS: dict[str, UpstreamConfig] = {
    "coingecko": UpstreamConfig(
        concurrency=3,
        requests_per_second=5,
        retry_attempts=2,
        base_delay=1.0,
        max_delay=20.0,
        circuit_threshold=3,
        circuit_timeout=45.0,
    ),
    "defillama": UpstreamConfig(
        concurrency=4,
        requests_per_second=5,
        retry_attempts=2,
        base_delay=1.0,
        max_delay=20.0,
        circuit_threshold=3,
        circuit_timeout=45.0,
    ),
    "thegraph": UpstreamConfig(
        concurrency=4,
        requests_per_second=5,
        retry_attempts=2,
        base_delay=1.0,
        max_delay=20.0,
        circuit_threshold=3,
        circuit_timeout=45.0,
    ),
    "ethereum": UpstreamConfig(
        concurrency=6,
        requests_per_second=10,
        retry_attempts=2,
        base_delay=0.5,
        max_delay=10.0,
        circuit_threshold=5,
        circuit_timeout=30.0,
    ),
    "curve": UpstreamConfig(
        concurrency=3,
        requests_per_second=4,
        retry_attempts=2,
        base_delay=1.5,
        max_delay=20.0,
        circuit_threshold=4,
        circuit_timeout=60.0,
    ),
    "fluid": UpstreamConfig(
        concurrency=3,
        requests_per_second=5,
        retry_attempts=2,
        base_delay=1.0,
        max_delay=20.0,
        circuit_threshold=4,
        circuit_timeout=60.0,
    ),
    "morpho": UpstreamConfig(
        concurrency=4,
        requests_per_second=5,
        retry_attempts=3,
        base_delay=1.0,
        max_delay=15.0,
        circuit_threshold=5,
        circuit_timeout=60.0,
    ),
    "pendle": UpstreamConfig(
        concurrency=3,
        requests_per_second=5,
        retry_attempts=2,
        base_delay=1.0,
        max_delay=20.0,
        circuit_threshold=4,
        circuit_timeout=60.0,
    ),
}


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        SERVICE_NAME: Service name attached to every log line.
        REDIS_URL: Redis connection URL for the cache store.
        CACHE_ENABLED: Disable to bypass the cache entirely.
        FETCH_TIMEOUT_SECONDS: Default timeout for a safe fetch.
        COALESCE_REQUESTS: Default coalescing for upstreams without a preset.
        LOG_LEVEL: Logging level.
        LOG_JSON: Render logs as JSON instead of console output.
    """

    SERVICE_NAME: str = "cacheguard"

    # Cache
    REDIS_URL: str = "redis://localhost:6379"
    CACHE_ENABLED: bool = True

    # Fetching
    FETCH_TIMEOUT_SECONDS: float = 30.0
    COALESCE_REQUESTS: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            SERVICE_NAME=os.getenv("SERVICE_NAME", "cacheguard"),
            REDIS_URL=os.getenv("REDIS_URL", "redis://localhost:6379"),
            CACHE_ENABLED=_get_bool_env("CACHE_ENABLED", default=True),
            FETCH_TIMEOUT_SECONDS=_get_float_env("FETCH_TIMEOUT_SECONDS", 30.0),
            COALESCE_REQUESTS=_get_bool_env("COALESCE_REQUESTS", default=True),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_JSON=_get_bool_env("LOG_JSON", default=False),
        )

    def upstream_config(self, name: str) -> UpstreamConfig:
        """Preset for ``name`` (or defaults) with COALESCE_REQUESTS applied."""
        preset = UPSTREAM_PRESETS.get(name, UpstreamConfig())
        return preset.model_copy(update={"coalesce": self.COALESCE_REQUESTS})
