"""
Rate Limiting for the LookEscolar access API.

Two layers:
- Named profiles (token validation, gallery access, ...) enforced by
  ``RateLimiter`` over an injected ``RateLimitStore``. Exceeding a profile
  blocks the key for the profile's block duration.
- An app-wide coarse ceiling applied with slowapi.

Usage in a router:
    from app.core.rate_limit import token_validation_limiter

    @router.get("/share/{token}")
    async def view_share(
        request: Request,
        result: RateLimitResult = Depends(token_validation_limiter.dependency),
    ):
        ...
"""

import hashlib
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from app.core.audit import AuditAction, AuditLogger, AuditSeverity, mask_path_tokens
from app.core.errors import RateLimitExceededError, rate_limit_headers, rate_limit_payload
from app.core.rate_limit_store import RateLimitEntry, RateLimitStore

logger = logging.getLogger(__name__)


# =============================================================================
# Profiles
# =============================================================================

class RateLimitProfile(str, Enum):
    TOKEN_VALIDATION = "token_validation"
    GALLERY_ACCESS = "gallery_access"
    ADMIN_API = "admin_api"
    DISTRIBUTION = "distribution"
    PUBLIC_API = "public_api"
    DEVICE_REGISTRATION = "device_registration"


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: float
    max_attempts: int
    block_duration_seconds: float
    skip_successful_requests: bool = False
    message: str = "Too many requests. Please try again later."


_MINUTE = 60
_HOUR = 60 * _MINUTE

_PROFILE_CONFIGS = MappingProxyType({
    RateLimitProfile.TOKEN_VALIDATION: RateLimitConfig(
        window_seconds=15 * _MINUTE,
        max_attempts=50,
        block_duration_seconds=_HOUR,
        skip_successful_requests=False,
        message="Too many token validation attempts. Please try again later.",
    ),
    RateLimitProfile.GALLERY_ACCESS: RateLimitConfig(
        window_seconds=10 * _MINUTE,
        max_attempts=100,
        block_duration_seconds=30 * _MINUTE,
        skip_successful_requests=True,
        message="Too many gallery requests. Please slow down.",
    ),
    RateLimitProfile.ADMIN_API: RateLimitConfig(
        window_seconds=5 * _MINUTE,
        max_attempts=200,
        block_duration_seconds=15 * _MINUTE,
        skip_successful_requests=True,
        message="Admin API rate limit exceeded.",
    ),
    RateLimitProfile.DISTRIBUTION: RateLimitConfig(
        window_seconds=_HOUR,
        max_attempts=10,
        block_duration_seconds=4 * _HOUR,
        skip_successful_requests=False,
        message="Distribution limit reached. Please try again later.",
    ),
    RateLimitProfile.PUBLIC_API: RateLimitConfig(
        window_seconds=5 * _MINUTE,
        max_attempts=60,
        block_duration_seconds=10 * _MINUTE,
        skip_successful_requests=True,
        message="Too many requests to the public API.",
    ),
    RateLimitProfile.DEVICE_REGISTRATION: RateLimitConfig(
        window_seconds=30 * _MINUTE,
        max_attempts=20,
        block_duration_seconds=2 * _HOUR,
        skip_successful_requests=True,
        message="Too many device registration attempts.",
    ),
})

_KEY_PREFIXES = MappingProxyType({
    RateLimitProfile.TOKEN_VALIDATION: "token_val",
    RateLimitProfile.GALLERY_ACCESS: "gallery",
    RateLimitProfile.ADMIN_API: "admin",
    RateLimitProfile.DISTRIBUTION: "dist",
    RateLimitProfile.PUBLIC_API: "public",
    RateLimitProfile.DEVICE_REGISTRATION: "device",
})


def get_rate_limit_config(profile: RateLimitProfile) -> RateLimitConfig:
    """Look up the configuration for a profile."""
    return _PROFILE_CONFIGS[RateLimitProfile(profile)]


def get_key_prefix(profile: RateLimitProfile) -> str:
    return _KEY_PREFIXES[RateLimitProfile(profile)]


# =============================================================================
# Limiter
# =============================================================================

@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float  # epoch seconds
    blocked: bool = False
    block_until: Optional[float] = None
    limit: int = 0


class RateLimiter:
    """
    Applies rate-limit configurations to keys held in a store.

    State transitions are read, compute, write. Two concurrent requests for
    the same key may both pass the last free slot.
    """

    def __init__(
        self,
        store: RateLimitStore,
        audit: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock

    async def check_limit(
        self,
        key: str,
        config: RateLimitConfig,
        context: dict[str, Any] | None = None,
    ) -> RateLimitResult:
        """
        Count one attempt against ``key``.

        ``context`` carries request details (ip_address, user_agent, path)
        for the audit trail.
        """
        now = self.clock()
        entry = await self.store.get(key)
        if entry is None:
            entry = RateLimitEntry(count=0, window_start=now, last_attempt=now)

        if entry.is_blocked(now):
            # Denied without touching the window, so a block outlasts it
            await self._audit(
                AuditAction.RATE_LIMIT_BLOCKED,
                key,
                config,
                context,
                remaining_block_seconds=entry.blocked_until - now,
                total_attempts=entry.count,
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=entry.blocked_until,
                blocked=True,
                block_until=entry.blocked_until,
                limit=config.max_attempts,
            )

        if now - entry.window_start >= config.window_seconds or entry.blocked_until is not None:
            entry = RateLimitEntry(count=0, window_start=now, last_attempt=now)

        entry = replace(entry, count=entry.count + 1, last_attempt=now)

        if entry.count > config.max_attempts:
            block_until = now + config.block_duration_seconds
            entry = replace(entry, blocked_until=block_until)
            await self.store.set(key, entry, ttl_seconds=config.block_duration_seconds)
            logger.warning(
                "Rate limit exceeded for %s, blocked for %ss",
                mask_path_tokens(key),
                config.block_duration_seconds,
            )
            await self._audit(
                AuditAction.RATE_LIMIT_EXCEEDED,
                key,
                config,
                context,
                block_duration_seconds=config.block_duration_seconds,
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=block_until,
                blocked=True,
                block_until=block_until,
                limit=config.max_attempts,
            )

        await self.store.set(key, entry, ttl_seconds=config.window_seconds)
        return RateLimitResult(
            allowed=True,
            remaining=max(0, config.max_attempts - entry.count),
            reset_time=entry.window_start + config.window_seconds,
            blocked=False,
            limit=config.max_attempts,
        )

    async def mark_success(self, key: str, config: RateLimitConfig) -> None:
        """Give back one attempt for profiles that only count failures."""
        if not config.skip_successful_requests:
            return
        entry = await self.store.get(key)
        if entry is not None and entry.count > 0:
            await self.store.set(key, replace(entry, count=entry.count - 1), ttl_seconds=config.window_seconds)

    async def reset(self, key: str) -> bool:
        return await self.store.delete(key)

    async def get_stats(self) -> dict[str, Any]:
        return await self.store.stats(self.clock())

    async def clear(self) -> None:
        await self.store.clear()

    async def _audit(
        self,
        action: AuditAction,
        key: str,
        config: RateLimitConfig,
        context: dict[str, Any] | None,
        **extra: Any,
    ) -> None:
        if self.audit is None:
            return
        context = context or {}
        metadata = {
            "rate_limit_key": mask_path_tokens(key),
            "window_seconds": config.window_seconds,
            "max_attempts": config.max_attempts,
            **extra,
        }
        try:
            await self.audit.log_event(
                action,
                metadata,
                AuditSeverity.WARNING,
                ip_address=context.get("ip_address"),
                user_agent=context.get("user_agent"),
                path=context.get("path"),
            )
        except Exception as e:
            logger.error("Failed to log rate limit event: %s", e)


# =============================================================================
# Request Keys
# =============================================================================

def get_client_ip(request: Request) -> str:
    """Client IP from proxy headers: x-forwarded-for, x-real-ip, cf-connecting-ip."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # Take first IP in chain (original client)
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    return "unknown"


def default_rate_limit_key(prefix: str, request: Request) -> str:
    """``prefix:ip:ua_hash:path``"""
    user_agent = (request.headers.get("user-agent") or "unknown")[:50]
    ua_hash = hashlib.md5(user_agent.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}:{get_client_ip(request)}:{ua_hash}:{request.url.path}"


def email_rate_limit_key(email: str) -> str:
    return f"email:{email.strip().lower()}"


def request_context(request: Request) -> dict[str, Any]:
    return {
        "ip_address": get_client_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "path": mask_path_tokens(request.url.path),
    }


# =============================================================================
# Guards
# =============================================================================

class RateLimitGuard:
    """
    Per-profile request guard.

    ``await guard(request)`` returns None to continue, or a ready 429
    response. The limiter and suspicious-activity tracker are looked up on
    ``request.app.state``, so every app instance owns its own counters.
    """

    def __init__(
        self,
        profile: RateLimitProfile,
        key_func: Callable[[Request], str] | None = None,
        key_prefix: str | None = None,
    ):
        self.profile = RateLimitProfile(profile)
        self.key_prefix = key_prefix or get_key_prefix(self.profile)
        self.key_func = key_func

    @property
    def config(self) -> RateLimitConfig:
        return get_rate_limit_config(self.profile)

    def key_for(self, request: Request) -> str:
        if self.key_func is not None:
            return f"{self.key_prefix}:{self.key_func(request)}"
        return default_rate_limit_key(self.key_prefix, request)

    def effective_config(self, request: Request) -> RateLimitConfig:
        """Profile config, tightened for clients with recent failures."""
        tracker = getattr(request.app.state, "suspicious_activity", None)
        if tracker is None:
            return self.config
        return tracker.get_adaptive_config(get_client_ip(request), self.config)

    async def check(self, request: Request) -> tuple[RateLimitResult, RateLimitConfig]:
        limiter: RateLimiter = request.app.state.rate_limiter
        config = self.effective_config(request)
        result = await limiter.check_limit(self.key_for(request), config, request_context(request))
        request.state.rate_limit = (result, config)
        return result, config

    async def __call__(self, request: Request) -> Optional[JSONResponse]:
        result, config = await self.check(request)
        if result.allowed:
            return None
        return rate_limit_response(result, config, request.app.state.rate_limiter.clock())

    async def dependency(self, request: Request) -> RateLimitResult:
        """FastAPI dependency form: raises RateLimitExceededError on denial."""
        result, config = await self.check(request)
        if not result.allowed:
            raise RateLimitExceededError(
                message=config.message,
                limit=config.max_attempts,
                remaining=result.remaining,
                reset_time=result.reset_time,
                now=request.app.state.rate_limiter.clock(),
            )
        return result

    async def mark_success(self, request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        await limiter.mark_success(self.key_for(request), self.config)


def rate_limit_response(result: RateLimitResult, config: RateLimitConfig, now: float) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=rate_limit_payload(config.message, config.max_attempts, result.remaining, result.reset_time),
        headers=rate_limit_headers(config.max_attempts, result.remaining, result.reset_time, now),
    )


def apply_rate_limit_headers(response: Response, result: RateLimitResult, config: RateLimitConfig) -> Response:
    """Attach X-RateLimit-* headers to an allowed response."""
    headers = rate_limit_headers(config.max_attempts, result.remaining, result.reset_time, 0)
    headers.pop("Retry-After")
    response.headers.update(headers)
    return response


token_validation_limiter = RateLimitGuard(RateLimitProfile.TOKEN_VALIDATION)
gallery_access_limiter = RateLimitGuard(RateLimitProfile.GALLERY_ACCESS)
admin_api_limiter = RateLimitGuard(RateLimitProfile.ADMIN_API)
distribution_limiter = RateLimitGuard(RateLimitProfile.DISTRIBUTION)
public_api_limiter = RateLimitGuard(RateLimitProfile.PUBLIC_API)
device_registration_limiter = RateLimitGuard(RateLimitProfile.DEVICE_REGISTRATION)


# =============================================================================
# Global ceiling (slowapi)
# =============================================================================

def create_global_limiter(settings) -> Limiter:
    """Coarse per-client ceiling applied to every endpoint."""
    return Limiter(
        key_func=get_client_ip,
        default_limits=[settings.global_rate_limit],
        storage_uri=settings.redis_url or "memory://",
        in_memory_fallback_enabled=bool(settings.redis_url),
        strategy="fixed-window",
        enabled=settings.global_rate_limit_enabled,
    )


def global_rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi denials with the same payload as profile denials."""
    now = time.time()
    limit_item = exc.limit.limit
    reset_time = now + limit_item.get_expiry()

    logger.warning(
        "Global rate limit exceeded: %s on %s %s",
        get_client_ip(request),
        request.method,
        mask_path_tokens(request.url.path),
    )

    return JSONResponse(
        status_code=429,
        content=rate_limit_payload("Too many requests. Please slow down.", limit_item.amount, 0, reset_time),
        headers=rate_limit_headers(limit_item.amount, 0, reset_time, now),
    )


__all__ = [
    "RateLimitProfile",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimiter",
    "RateLimitGuard",
    "get_rate_limit_config",
    "get_client_ip",
    "default_rate_limit_key",
    "email_rate_limit_key",
    "apply_rate_limit_headers",
    "rate_limit_response",
    "token_validation_limiter",
    "gallery_access_limiter",
    "admin_api_limiter",
    "distribution_limiter",
    "public_api_limiter",
    "device_registration_limiter",
    "create_global_limiter",
    "global_rate_limit_exceeded_handler",
]
