"""
Access logging for the API usage ledger.

Each request gets an id, reused from X-Request-ID when the caller sends
one, that is attached to every record logged while the request runs and
echoed back with the response time. Health checks are only logged when
they fail; the root banner and API docs are never logged.
"""

import logging
import time
import uuid
from typing import Callable, FrozenSet, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.auth import client_ip
from src.utils.logging import request_context

logger = logging.getLogger(__name__)

QUIET_PATHS: FrozenSet[str] = frozenset({"/", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})
HEALTH_PATHS: FrozenSet[str] = frozenset({"/health", "/health/db"})


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns request ids, times each request and writes one access log line."""

    def __init__(
        self,
        app,
        quiet_paths: Optional[FrozenSet[str]] = None,
        health_paths: Optional[FrozenSet[str]] = None,
    ):
        super().__init__(app)
        self.quiet_paths = QUIET_PATHS if quiet_paths is None else quiet_paths
        self.health_paths = HEALTH_PATHS if health_paths is None else health_paths

    def should_log(self, path: str, status_code: int) -> bool:
        if path in self.quiet_paths:
            return False
        if path in self.health_paths:
            return status_code >= 400
        return True

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        method, path = request.method, request.url.path

        with request_context(request_id):
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.exception(f"{method} {path} failed after {elapsed_ms:.2f}ms")
                raise

            elapsed_ms = (time.perf_counter() - started) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"

            if self.should_log(path, response.status_code):
                caller = getattr(request.state, "user_id", None)
                logger.log(
                    _level_for(response.status_code),
                    f"{method} {path} {response.status_code} ({elapsed_ms:.2f}ms)",
                    extra={
                        "event": "http_request",
                        "http_status": response.status_code,
                        "duration_ms": round(elapsed_ms, 2),
                        "client_ip": client_ip(request),
                        "caller": caller[:8] if caller else None,
                    },
                )

        return response
