"""Orchestration of cache and resilience per upstream call.

This module contains:
- SafeFetcher: get-or-fetch with stale and placeholder fallback
- ResilienceContext: startup-built owner of cache, queues and breakers
"""

from cacheguard.orchestration.context import ResilienceContext
from cacheguard.orchestration.safe_fetch import (
    FetchOutcome,
    FetchSource,
    SafeFetcher,
    placeholder,
)

__all__ = [
    "FetchOutcome",
    "FetchSource",
    "ResilienceContext",
    "SafeFetcher",
    "placeholder",
]
