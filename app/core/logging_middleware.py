"""
Request Logging Middleware for LookEscolar.

Provides structured request/response logging with timing metrics.
Token path segments are masked before they reach any log line.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.audit import mask_path_tokens
from app.core.rate_limit import get_client_ip

logger = logging.getLogger("lookescolar.requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for logging HTTP requests and responses.

    Features:
    - Request ID tracking
    - Response timing
    - Masked token paths
    """

    # Paths to exclude from logging (health checks)
    EXCLUDE_PATHS = {
        "/healthz",
        "/readyz",
        "/favicon.ico",
    }

    def __init__(self, app, log_headers: bool = False):
        super().__init__(app)
        self.log_headers = log_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.EXCLUDE_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id", str(uuid.uuid4())[:8])
        logged_path = mask_path_tokens(path)
        start_time = time.perf_counter()

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": logged_path,
            "client_ip": get_client_ip(request),
            "user_agent": request.headers.get("User-Agent", "")[:100],
        }

        if self.log_headers:
            log_data["headers"] = {
                k: v for k, v in request.headers.items() if k.lower() not in ("authorization", "cookie")
            }

        logger.info("Request started: %s %s", request.method, logged_path, extra=log_data)

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_data.update({
                "status_code": 500,
                "duration_ms": round(duration_ms, 2),
                "error": str(e),
            })
            logger.exception(
                "Request failed: %s %s -> 500 (%.2fms) - %s",
                request.method, logged_path, duration_ms, str(e),
                extra=log_data,
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        log_data.update({
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
        })

        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "Request completed: %s %s -> %d (%.2fms)",
            request.method, logged_path, response.status_code, duration_ms,
            extra=log_data,
        )

        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
