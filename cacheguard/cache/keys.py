"""Deterministic cache key generation.

Keys follow ``{provider}:{operation}:{param_signature}`` and the stale
mirror of any key is ``{key}:stale``. Signatures are derived from key-sorted,
normalized parameters so the same call maps to the same key across
processes and restarts.
"""

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from cacheguard.resilience.errors import ConfigurationError

STALE_SUFFIX = ":stale"
EMPTY_SIGNATURE = "default"


def _normalize(value: Any) -> Any:
    """Normalize a parameter value for signing.

    Mapping keys and set members are sorted; list and tuple order is kept
    since positional parameters depend on it.
    """
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(v) for v in value), key=lambda v: (type(v).__name__, str(v)))
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, str):
        return value.strip()
    return value


def param_signature(params: Mapping[str, Any] | None) -> str:
    """Stable short signature for a parameter mapping.

    Args:
        params: Call parameters. ``None`` values are ignored.

    Returns:
        Hex digest prefix, or ``"default"`` when there are no parameters.
    """
    cleaned = {k: v for k, v in (params or {}).items() if v is not None}
    if not cleaned:
        return EMPTY_SIGNATURE
    content = json.dumps(_normalize(cleaned), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(content.encode()).hexdigest()[:16]


def generate_cache_key(
    provider: str,
    operation: str,
    params: Mapping[str, Any] | None = None,
) -> str:
    """Build ``{provider}:{operation}:{param_signature}``.

    Raises:
        ConfigurationError: If provider or operation is empty.
    """
    if not provider or not operation:
        raise ConfigurationError("cache keys need a provider and an operation")
    return f"{provider}:{operation}:{param_signature(params)}"


def stale_key(key: str) -> str:
    """Key of the stale mirror for ``key``."""
    return f"{key}{STALE_SUFFIX}"


def is_stale_key(key: str) -> bool:
    """Whether ``key`` names a stale mirror."""
    return key.endswith(STALE_SUFFIX)


class CacheKeyBuilder:
    """Builder for consistent cache key generation."""

    @classmethod
    def build(cls, provider: str, operation: str, **params: Any) -> str:
        """Build a key from keyword parameters.

        Example:
            CacheKeyBuilder.build("ethereum", "token-balance",
                                  token_address="0xabc", holder="0xdef")
        """
        return generate_cache_key(provider, operation, params)

    @classmethod
    def token_price(cls, provider: str, token_id: str) -> str:
        """Build the key for a single token price."""
        return generate_cache_key(provider, "token-price", {"token": token_id.lower()})

    @classmethod
    def protocol_tvl(cls, provider: str, protocol: str) -> str:
        """Build the key for a protocol's TVL."""
        return generate_cache_key(provider, "protocol-tvl", {"protocol": protocol.lower()})

    @classmethod
    def pattern(cls, provider: str, operation: str | None = None) -> str:
        """Glob pattern matching every key of a provider (and operation)."""
        if operation:
            return f"{provider}:{operation}:*"
        return f"{provider}:*"
