"""
Public Access Router

Token-gated entry points for shared galleries and family galleries.

Endpoints:
- GET /api/public/share/{token} - Resolve a share link and count a view
- GET /api/family/gallery/{token} - Resolve a family gallery token

Every request passes a rate-limit guard before the token is resolved.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit import AuditAction, AuditSeverity, mask_token
from app.core.database import get_db
from app.core.errors import (
    AccessControlError,
    NotFoundError,
    PasswordRequiredError,
    TokenExpiredError,
    TokenInactiveError,
    ViewLimitReachedError,
)
from app.core.rate_limit import (
    RateLimitResult,
    apply_rate_limit_headers,
    gallery_access_limiter,
    get_client_ip,
    request_context,
    token_validation_limiter,
)
from app.core.time import utcnow
from app.core.validation import AccessTokenPath
from app.services.access_types import FamilyAccessRejection
from app.services.public_access import PublicAccessService, share_password_matches

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Public Access"])

_REJECTION_MESSAGES = {
    "not_family_scope": "This link does not grant family gallery access",
    "context_unavailable": "The gallery for this link is no longer available",
}


def get_public_access_service(db: AsyncSession = Depends(get_db)) -> PublicAccessService:
    return PublicAccessService(db)


async def _token_miss(request: Request, token: str) -> None:
    """Count a failed lookup against the client and audit it."""
    state = request.app.state
    context = request_context(request)
    failures = state.suspicious_activity.track_auth_failure(get_client_ip(request))

    await state.audit_logger.log_event(
        AuditAction.TOKEN_NOT_FOUND,
        {"token": token, "failures": failures},
        AuditSeverity.WARNING,
        **context,
    )
    if failures == state.suspicious_activity.threshold:
        await state.audit_logger.log_event(
            AuditAction.SUSPICIOUS_ACTIVITY,
            {"failures": failures, "reason": "repeated_token_misses"},
            AuditSeverity.WARNING,
            **context,
        )


def _masked_body(body: dict, token: str) -> dict:
    body["token"]["token"] = mask_token(token)
    return body


# =============================================================================
# Share Links
# =============================================================================

@router.get("/api/public/share/{token}")
async def view_share(
    request: Request,
    token: AccessTokenPath,
    share_password: Optional[str] = Header(default=None, alias="X-Share-Password"),
    service: PublicAccessService = Depends(get_public_access_service),
):
    """
    Resolve a share link.

    404 unknown, 410 expired, 403 disabled or out of views. Password
    protected links need ``X-Share-Password``: 401 without it, 403 when it
    does not match. A successful response counts one view.
    """
    limited = await token_validation_limiter(request)
    if limited is not None:
        return limited

    resolved = await service.resolve_access_token(token)
    # Keep any hydration even if the request is refused below
    await service.session.commit()

    if resolved is None:
        await _token_miss(request, token)
        raise NotFoundError("Access token")

    audit = request.app.state.audit_logger
    context = request_context(request)
    client_ip = get_client_ip(request)

    if resolved.is_expired(utcnow()):
        await audit.log_event(AuditAction.TOKEN_EXPIRED, {"token": token}, AuditSeverity.INFO, **context)
        raise TokenExpiredError()
    if not resolved.token.is_active:
        raise TokenInactiveError()
    if resolved.views_exhausted:
        raise ViewLimitReachedError(resolved.token.max_views)

    if resolved.token.password_hash:
        if not share_password:
            raise PasswordRequiredError()
        if not share_password_matches(share_password, resolved.token.password_hash):
            failures = request.app.state.suspicious_activity.track_auth_failure(client_ip)
            await audit.log_event(
                AuditAction.AUTH_FAILURE,
                {"token": token, "reason": "invalid_password", "failures": failures},
                AuditSeverity.WARNING,
                **context,
            )
            raise PasswordRequiredError(wrong_password=True)

    metadata = {
        **resolved.token.metadata,
        "last_accessed": utcnow().isoformat(),
        "last_ip": client_ip,
    }
    view_count = await service.record_share_view(
        resolved.token.public_access_id,
        resolved.token.share_token_id,
        metadata=metadata,
    )
    await service.session.commit()
    request.app.state.suspicious_activity.reset_auth_failures(client_ip)

    await audit.log_event(
        AuditAction.SHARE_VIEW,
        {
            "token": token,
            "public_access_id": resolved.token.public_access_id,
            "access_type": resolved.token.access_type.value,
            "view_count": view_count,
        },
        **context,
    )

    body = _masked_body(resolved.to_dict(), token)
    body["token"]["view_count"] = view_count
    response = JSONResponse(body)
    result, config = request.state.rate_limit
    return apply_rate_limit_headers(response, result, config)


# =============================================================================
# Family Galleries
# =============================================================================

@router.get("/api/family/gallery/{token}")
async def family_gallery(
    request: Request,
    token: AccessTokenPath,
    rate_limit: RateLimitResult = Depends(gallery_access_limiter.dependency),
    service: PublicAccessService = Depends(get_public_access_service),
):
    """Resolve a family token to its folder, student or subject."""
    resolution = await service.resolve_family_access(token)
    await service.session.commit()

    if resolution is None:
        await _token_miss(request, token)
        raise NotFoundError("Access token")

    audit = request.app.state.audit_logger
    context = request_context(request)

    if isinstance(resolution, FamilyAccessRejection):
        await audit.log_event(
            AuditAction.UNAUTHORIZED_ACCESS,
            {"token": token, "reason": resolution.reason},
            AuditSeverity.WARNING,
            **context,
        )
        raise AccessControlError(
            _REJECTION_MESSAGES[resolution.reason],
            error_code=resolution.reason,
            status_code=403,
        )

    expires_at = resolution.token.expires_at
    if expires_at is not None and expires_at <= utcnow():
        raise TokenExpiredError()
    if not resolution.token.is_active:
        raise TokenInactiveError()

    await gallery_access_limiter.mark_success(request)
    request.app.state.suspicious_activity.reset_auth_failures(get_client_ip(request))
    await audit.log_event(
        AuditAction.AUTH_SUCCESS,
        {"token": token, "kind": resolution.kind},
        **context,
    )

    response = JSONResponse(_masked_body(resolution.to_dict(), token))
    _, config = request.state.rate_limit
    return apply_rate_limit_headers(response, rate_limit, config)
