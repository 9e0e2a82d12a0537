"""
Error types and JSON error responses for the LookEscolar access API.

Every non-429 error leaves the API as ``ErrorResponse``:

    {"error": "token_expired", "message": "...", "details": null, "request_id": "..."}

Rate-limit denials use ``RateLimitResponse`` plus X-RateLimit-* and
Retry-After headers, whether they come from a profile guard or the global
slowapi ceiling.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.audit import mask_path_tokens

logger = logging.getLogger(__name__)


# =============================================================================
# Response Models
# =============================================================================

class ErrorDetail(BaseModel):
    loc: list[str] | None = None  # field path
    msg: str
    type: str


class ErrorResponse(BaseModel):
    error: str  # machine-readable code, e.g. "not_found"
    message: str
    details: list[ErrorDetail] | None = None
    request_id: str | None = None


class RateLimitResponse(BaseModel):
    """429 body shared by every rate-limited endpoint."""
    error: str = "Rate limit exceeded"
    message: str
    limit: int
    remaining: int
    reset: str  # ISO8601


# =============================================================================
# Exceptions
# =============================================================================

class AccessControlError(Exception):
    """Base for errors that map onto an HTTP status."""

    def __init__(
        self,
        message: str,
        error_code: str = "access_error",
        status_code: int = 500,
        details: list[dict] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class NotFoundError(AccessControlError):
    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} '{identifier}' not found" if identifier else f"{resource} not found"
        super().__init__(message=message, error_code="not_found", status_code=404)


class TokenExpiredError(AccessControlError):
    def __init__(self, message: str = "This access link has expired"):
        super().__init__(message=message, error_code="token_expired", status_code=410)


class TokenInactiveError(AccessControlError):
    def __init__(self, message: str = "This access link has been disabled"):
        super().__init__(message=message, error_code="token_inactive", status_code=403)


class ViewLimitReachedError(AccessControlError):
    def __init__(self, max_views: int):
        super().__init__(
            message=f"This access link reached its limit of {max_views} views",
            error_code="view_limit_reached",
            status_code=403,
        )


class PasswordRequiredError(AccessControlError):
    """401 when no password was sent, 403 when it does not match."""

    def __init__(self, wrong_password: bool = False):
        super().__init__(
            message="Incorrect password" if wrong_password else "Password required to access this content",
            error_code="password_required",
            status_code=403 if wrong_password else 401,
        )


class StorageError(AccessControlError):
    """The relational store failed (unreachable, write rejected)."""

    def __init__(self, operation: str = "Storage operation", message: str = "failed"):
        super().__init__(message=f"{operation}: {message}", error_code="storage_error", status_code=503)


# =============================================================================
# Rate Limit Payloads
# =============================================================================

def _iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def rate_limit_payload(message: str, limit: int, remaining: int, reset_time: float) -> dict[str, Any]:
    return RateLimitResponse(
        message=message,
        limit=limit,
        remaining=remaining,
        reset=_iso(reset_time),
    ).model_dump()


def rate_limit_headers(limit: int, remaining: int, reset_time: float, now: float) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": _iso(reset_time),
        "Retry-After": str(max(0, math.ceil(reset_time - now))),
    }


class RateLimitExceededError(AccessControlError):
    """Rate limit exceeded; always recoverable after ``reset_time``."""

    def __init__(self, message: str, limit: int, remaining: int, reset_time: float, now: float):
        super().__init__(message=message, error_code="rate_limit_exceeded", status_code=429)
        self.limit = limit
        self.remaining = remaining
        self.reset_time = reset_time
        self.now = now

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content=rate_limit_payload(self.message, self.limit, self.remaining, self.reset_time),
            headers=rate_limit_headers(self.limit, self.remaining, self.reset_time, self.now),
        )


# =============================================================================
# Handlers
# =============================================================================

_HTTP_ERROR_CODES = {
    400: "bad_request",
    403: "permission_denied",
    404: "not_found",
    405: "method_not_allowed",
    410: "gone",
    422: "validation_error",
    429: "rate_limit_exceeded",
    503: "service_unavailable",
}


def get_request_id(request: Request) -> Optional[str]:
    return request.headers.get("X-Request-Id")


def error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: list[dict] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        details=[ErrorDetail(**detail) for detail in details] if details else None,
        request_id=get_request_id(request),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def access_control_error_handler(request: Request, exc: AccessControlError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "%s on %s: %s",
        exc.error_code,
        mask_path_tokens(request.url.path),
        exc.message,
        extra={"error_code": exc.error_code},
    )
    return error_response(request, exc.status_code, exc.error_code, exc.message, exc.details)


async def rate_limit_error_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    return exc.to_response()


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        request,
        exc.status_code,
        _HTTP_ERROR_CODES.get(exc.status_code, "error"),
        str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "loc": [str(part) for part in error.get("loc", [])],
            "msg": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    logger.info("Validation error on %s: %d issues", mask_path_tokens(request.url.path), len(details))
    return error_response(request, 422, "validation_error", "Request validation failed", details)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s %s", request.method, mask_path_tokens(request.url.path), exc_info=exc)
    # Internal details stay in the log
    return error_response(request, 500, "internal_error", "An unexpected error occurred")


def setup_exception_handlers(app: FastAPI) -> None:
    """Register every handler; the most specific exception type wins."""
    app.add_exception_handler(RateLimitExceededError, rate_limit_error_handler)
    app.add_exception_handler(AccessControlError, access_control_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "AccessControlError",
    "ErrorResponse",
    "ErrorDetail",
    "RateLimitResponse",
    "NotFoundError",
    "TokenExpiredError",
    "TokenInactiveError",
    "ViewLimitReachedError",
    "PasswordRequiredError",
    "StorageError",
    "RateLimitExceededError",
    "error_response",
    "rate_limit_payload",
    "rate_limit_headers",
    "setup_exception_handlers",
]
