"""Logging setup."""

from cacheguard.observability.logging import bind_context, clear_context, configure_logging

__all__ = [
    "bind_context",
    "clear_context",
    "configure_logging",
]
