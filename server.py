"""
API usage ledger server.

Counts per-user daily calls against configurable limits and exposes the
user and admin endpoints. This is the entry point that assembles the
components from the app package.
"""

import logging
import re
import sys
from contextlib import asynccontextmanager

import sentry_sdk
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

# Configure structured logging FIRST, before other imports that use logging
from src.utils.logging import setup_logging

logger = setup_logging(service_name="api-usage-ledger")

from src.config import Settings, get_settings

# =============================================================================
# Configuration
# =============================================================================

try:
    settings: Settings = get_settings()
    logger.info("Configuration loaded", extra=settings.get_config_summary())
except ValidationError as e:
    logger.critical(f"Configuration validation failed: {e}")
    logger.critical("Application cannot start due to configuration errors.")
    sys.exit(1)

from app.error_handlers import register_exception_handlers
from app.middleware import RequestLoggingMiddleware
from app.routes import admin_router, health_router, usage_router
from src.db import close_pool
from src.usage.errors import StorageError
from src.usage.rate_limiter import get_rate_limiter
from src.utils.cache import TTLStatusCache

# =============================================================================
# Sentry Error Tracking Configuration
# =============================================================================

SENSITIVE_BREADCRUMB_KEYS = [
    "password", "api_key", "apikey", "api-key", "secret", "token",
    "authorization", "bearer", "credential", "private",
]


def filter_sensitive_breadcrumbs(crumb, hint):
    """
    Filter sensitive data from Sentry breadcrumbs.

    Removes authorization headers and masks sensitive query parameters.
    """
    if crumb.get("category") == "http":
        data = crumb.get("data")
        if isinstance(data, dict):
            headers = data.get("headers")
            if isinstance(headers, dict):
                for key in list(headers.keys()):
                    if any(s in key.lower() for s in SENSITIVE_BREADCRUMB_KEYS):
                        headers[key] = "[FILTERED]"
            if "url" in data:
                for key in SENSITIVE_BREADCRUMB_KEYS:
                    if f"{key}=" in data["url"].lower():
                        pattern = re.compile(f"({re.escape(key)}=)[^&]*", re.IGNORECASE)
                        data["url"] = pattern.sub(r"\1[FILTERED]", data["url"])

    if crumb.get("category") in ("console", "log") and "message" in crumb:
        message = str(crumb["message"]).lower()
        if any(key in message for key in SENSITIVE_BREADCRUMB_KEYS):
            crumb["message"] = "[FILTERED - may contain sensitive data]"

    return crumb


if settings.is_sentry_configured:
    sentry_settings = settings.sentry
    sentry_sdk.init(
        dsn=sentry_settings.sentry_dsn,
        environment=sentry_settings.sentry_environment,
        sample_rate=1.0,
        traces_sample_rate=sentry_settings.sentry_traces_sample_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        before_breadcrumb=filter_sensitive_breadcrumbs,
        send_default_pii=False,
        attach_stacktrace=True,
        server_name=sentry_settings.server_name,
        release=sentry_settings.sentry_release,
    )
    logger.info(f"Sentry initialized for environment: {sentry_settings.sentry_environment}")
else:
    logger.info("Sentry DSN not configured, error tracking disabled")


# =============================================================================
# Initialize FastAPI App
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Seed missing global limits on startup; release storage on shutdown."""
    limiter = get_rate_limiter()
    try:
        await limiter.seed_global_limits(settings.rate_limit.default_limits)
    except StorageError as e:
        logger.warning(f"Could not seed default global limits: {e}")

    yield

    try:
        await limiter.store.close()
    except StorageError as e:
        logger.warning("Failed to close usage store: %s", e)
    await close_pool()


app = FastAPI(
    title="API Usage Ledger",
    description="""
## Per-user daily API quotas

Counts calls per user, API type and calendar day against a configurable
daily limit, and lets administrators manage global and per-user limits.

### Authentication

- **User endpoints:** the caller's identity in `X-User-ID`
- **Admin endpoints:** `Authorization: Bearer <admin token>`

### Limits

Each day's usage row snapshots the limit in force when it was created.
Changing a global limit re-snapshots today's rows; per-user overrides
take effect from the user's next new daily row.
""",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health checks and system status"},
        {"name": "usage", "description": "Per-user daily usage and quota"},
        {"name": "admin", "description": "Limit management and usage statistics"},
    ],
)

app.state.health_cache = TTLStatusCache(
    ttl=settings.health.health_cache_ttl_seconds,
    name="storage_health",
)

# =============================================================================
# Exception Handlers
# =============================================================================

register_exception_handlers(app)
logger.info("Centralized exception handlers registered")

# =============================================================================
# Middleware
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.security.origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-User-ID",
        "X-Request-ID",
        "Accept",
        "Origin",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-Response-Time",
        "X-DailyLimit-Limit",
        "X-DailyLimit-Remaining",
        "X-DailyLimit-Reset",
        "X-DailyLimit-Degraded",
        "Retry-After",
    ],
    max_age=600,
)

# Added last so it wraps all other middleware
if settings.logging.request_logging_enabled:
    app.add_middleware(RequestLoggingMiddleware)
    logger.info("Request logging middleware enabled")

# =============================================================================
# Include Routers
# =============================================================================

app.include_router(health_router)
app.include_router(usage_router)
app.include_router(admin_router)


if __name__ == "__main__":
    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=not settings.is_production)
