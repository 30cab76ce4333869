"""Health, queue status and cache administration endpoints.

This module provides:
- /health: cache reachability and per-upstream circuit state (200 or 503)
- /health/queues: RequestQueue status per upstream
- /admin/flush-cache: remove every cache entry
- /admin/cache?pattern=: remove entries matching a glob pattern
- /admin/cache-info: store details and cache metrics

Admin operations run directly against the cache store, bypassing the
cache manager's TTL and validation policy.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from cacheguard.orchestration.context import ResilienceContext

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])
admin_router = APIRouter(prefix="/admin", tags=["Admin"])


def get_context(request: Request) -> ResilienceContext:
    """Resilience context stored on the application at startup.

    Raises:
        HTTPException: 503 if the context was never attached.
    """
    context = getattr(request.app.state, "resilience", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Resilience context not initialized")
    return context


@router.get("/health")
async def health(context: ResilienceContext = Depends(get_context)) -> JSONResponse:
    """Full health snapshot.

    Returns 503 while any circuit is open or the cache store is unreachable.
    """
    snapshot = await context.health()
    status_code = 200 if snapshot["status"] == "healthy" else 503
    return JSONResponse(content=snapshot, status_code=status_code)


@router.get("/health/queues")
async def queue_status(context: ResilienceContext = Depends(get_context)) -> dict[str, Any]:
    """Status and health of every upstream queue."""
    return {name: queue.health_check() for name, queue in context.queues.items()}


@admin_router.post("/flush-cache")
async def flush_cache(context: ResilienceContext = Depends(get_context)) -> dict[str, Any]:
    """Remove every entry from the cache store."""
    try:
        await context.store.flush()
    except Exception as e:
        logger.error("admin_flush_failed", error=str(e))
        raise HTTPException(status_code=502, detail=f"Cache flush failed: {e}") from e
    logger.warning("admin_cache_flushed")
    return {"success": True, "message": "Cache flushed"}


@admin_router.delete("/cache")
async def delete_cache_pattern(
    pattern: str = Query(..., min_length=1, description="Glob pattern, e.g. 'coingecko:*'"),
    context: ResilienceContext = Depends(get_context),
) -> dict[str, Any]:
    """Remove every cache entry matching ``pattern``."""
    if pattern.strip() in ("*", ""):
        raise HTTPException(status_code=400, detail="Use /admin/flush-cache to remove everything")
    try:
        deleted = await context.store.delete_pattern(pattern)
    except Exception as e:
        logger.error("admin_delete_pattern_failed", pattern=pattern, error=str(e))
        raise HTTPException(status_code=502, detail=f"Cache delete failed: {e}") from e
    logger.info("admin_cache_pattern_deleted", pattern=pattern, deleted_count=deleted)
    return {"success": True, "pattern": pattern, "deleted": deleted}


@admin_router.get("/cache-info")
async def cache_info(context: ResilienceContext = Depends(get_context)) -> dict[str, Any]:
    """Store details plus cache manager metrics."""
    try:
        info = await context.store.info()
    except Exception as e:
        logger.error("admin_cache_info_failed", error=str(e))
        raise HTTPException(status_code=502, detail=f"Cache info failed: {e}") from e
    return {
        "store": info,
        "enabled": context.cache.enabled,
        "metrics": context.cache.get_metrics(),
    }
