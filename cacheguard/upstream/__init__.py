"""HTTP clients for upstream data providers."""

from cacheguard.upstream.client import JsonRpcClient, UpstreamClient

__all__ = [
    "JsonRpcClient",
    "UpstreamClient",
]
