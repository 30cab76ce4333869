"""HTTP surface: health, queue status and cache administration."""

from cacheguard.api.app import create_app
from cacheguard.api.health import admin_router, get_context, router

__all__ = [
    "admin_router",
    "create_app",
    "get_context",
    "router",
]
