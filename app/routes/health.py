"""
Health check and root endpoints.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

import sentry_sdk
from fastapi import APIRouter, Depends, Request

from src.config import get_settings
from src.usage.errors import StorageError
from src.usage.rate_limiter import ApiRateLimiter
from src.utils.cache import TTLStatusCache

from ..dependencies import get_usage_limiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

APP_VERSION = "1.0.0"


def get_health_cache(request: Request) -> TTLStatusCache:
    """
    The storage probe cache attached to the application.

    Created on first use when the app was built without one.
    """
    cache = getattr(request.app.state, "health_cache", None)
    if cache is None:
        cache = TTLStatusCache(
            ttl=get_settings().health.health_cache_ttl_seconds,
            name="storage_health",
        )
        request.app.state.health_cache = cache
    return cache


async def get_storage_status(limiter: ApiRateLimiter) -> Dict[str, Any]:
    """
    Probe the usage store.

    Performs a trivial round trip to verify the backend can serve requests.
    """
    backend = limiter.store.backend_name
    start_time = time.perf_counter()
    try:
        await limiter.store.ping()
    except StorageError as e:
        logger.warning(f"Storage health check failed: {e}")
        return {
            "backend": backend,
            "connected": False,
            "error": e.message[:100],
        }

    latency_ms = (time.perf_counter() - start_time) * 1000
    return {
        "backend": backend,
        "connected": True,
        "latency_ms": round(latency_ms, 2),
    }


def get_sentry_status() -> Dict[str, Any]:
    """Whether Sentry is configured and its client is active."""
    settings = get_settings()
    configured = settings.is_sentry_configured
    return {
        "configured": configured,
        "active": sentry_sdk.get_client().is_active() if configured else False,
        "environment": settings.sentry.sentry_environment if configured else None,
    }


@router.get(
    "/health",
    summary="System health check",
    description="""
Health check endpoint for monitoring and load balancers.

Returns overall service health including usage storage and Sentry status.

**Authentication**: Not required.
    """,
)
async def health_check(
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> Dict[str, Any]:
    """
    Health check endpoint for monitoring and load balancers.

    Storage is probed on every call; use /health/db for the cached probe.
    """
    settings = get_settings()
    storage_status = await get_storage_status(limiter)
    sentry_status = get_sentry_status()

    return {
        "status": "healthy" if storage_status["connected"] else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "environment": settings.security.environment,
        "services": {
            "storage": {
                "status": "up" if storage_status["connected"] else "down",
                "backend": storage_status["backend"],
                "latency_ms": storage_status.get("latency_ms"),
            },
            "sentry": {
                "status": "up" if sentry_status["active"] else (
                    "unconfigured" if not sentry_status["configured"] else "down"
                ),
            },
        },
    }


@router.get("/health/db")
async def database_health(
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
    cache: TTLStatusCache = Depends(get_health_cache),
) -> Dict[str, Any]:
    """
    Storage health check, cached for HEALTH_CACHE_TTL_SECONDS.

    The response says whether the result came from the cache and how old it is.
    """
    storage_status = cache.get()
    cached = storage_status is not None

    if not cached:
        storage_status = await get_storage_status(limiter)
        cache.set(storage_status)

    age = cache.age() or 0.0
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "cached": cached,
        "cache_age_seconds": round(age, 1) if cached else 0.0,
        "cache_ttl_seconds": cache.ttl,
        "storage": storage_status,
    }


@router.get("/", summary="API information")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "API usage ledger",
        "version": APP_VERSION,
        "docs": "/docs",
        "health": "/health",
        "api_base": "/api",
    }
