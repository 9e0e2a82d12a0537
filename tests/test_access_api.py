"""
API tests for the share and family gallery endpoints.
"""

import logging
import time
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from app.core.rate_limit import RateLimitResult
from app.core.time import utcnow
from app.models.models import PublicAccessToken, ShareToken, SubjectToken
from app.services.public_access import hash_share_password


CLIENT = {"X-Forwarded-For": "203.0.113.50"}


async def add_expired_subject_token(session):
    session.add(SubjectToken(
        id="sjt-old",
        token="subject-token-expired",
        subject_id="sub-1",
        expires_at=utcnow() - timedelta(days=1),
    ))
    await session.commit()


# =============================================================================
# Share Links
# =============================================================================

@pytest.mark.anyio
async def test_share_view_success(client, school, audit_sink):
    response = await client.get("/api/public/share/eventshare-token-0001", headers=CLIENT)

    assert response.status_code == 200
    data = response.json()
    assert data["token"]["token"] == "eve***"
    assert data["token"]["access_type"] == "share_event"
    assert data["token"]["view_count"] == 1
    assert data["event"]["name"] == "Spring Photos 2025"
    assert data["share"]["allow_download"] is True

    assert response.headers["X-RateLimit-Limit"] == "50"
    assert response.headers["X-RateLimit-Remaining"] == "49"
    assert "X-RateLimit-Reset" in response.headers
    assert "Retry-After" not in response.headers
    assert "X-Request-Id" in response.headers

    assert audit_sink.actions() == ["share.view"]
    assert audit_sink.entries[0].metadata["token"] == "eve***"
    assert audit_sink.entries[0].ip_address == "203.0.113.50"


@pytest.mark.anyio
async def test_share_views_accumulate(client, school, session_factory):
    for expected in (1, 2):
        response = await client.get("/api/public/share/photoshare-token-0001", headers=CLIENT)
        assert response.json()["token"]["view_count"] == expected

    async with session_factory() as session:
        legacy = await session.scalar(select(ShareToken.view_count).where(ShareToken.id == "shr-photos"))
    assert legacy == 2


@pytest.mark.anyio
async def test_unknown_token_is_404_and_audited(client, school, audit_sink):
    response = await client.get("/api/public/share/never-issued-token", headers=CLIENT)

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"

    assert audit_sink.actions() == ["token.not_found"]
    assert audit_sink.entries[0].metadata == {"token": "nev***", "failures": 1}


@pytest.mark.anyio
async def test_repeated_misses_flag_suspicious_activity(client, school, audit_sink):
    for _ in range(3):
        await client.get("/api/public/share/never-issued-token", headers=CLIENT)

    assert audit_sink.actions().count("security.suspicious_activity") == 1


@pytest.mark.anyio
async def test_expired_token_is_410(client, session, school, session_factory, audit_sink):
    await add_expired_subject_token(session)

    response = await client.get("/api/public/share/subject-token-expired", headers=CLIENT)

    assert response.status_code == 410
    assert response.json()["error"] == "token_expired"
    assert "token.expired" in audit_sink.actions()

    # Hydration is kept even though access was refused
    async with session_factory() as fresh:
        count = await fresh.scalar(
            select(func.count())
            .select_from(PublicAccessToken)
            .where(PublicAccessToken.token == "subject-token-expired")
        )
    assert count == 1


@pytest.mark.anyio
async def test_disabled_share_is_403(client, session, school):
    session.add(ShareToken(
        id="shr-off",
        token="disabledshare-token-0001",
        event_id="evt-1",
        share_type="event",
        is_active=False,
    ))
    await session.commit()

    response = await client.get("/api/public/share/disabledshare-token-0001", headers=CLIENT)

    assert response.status_code == 403
    assert response.json()["error"] == "token_inactive"


@pytest.mark.anyio
async def test_view_limit_is_403(client, session, school):
    session.add(ShareToken(
        id="shr-limited",
        token="limitedshare-token-0001",
        event_id="evt-1",
        share_type="event",
        max_views=1,
    ))
    await session.commit()

    first = await client.get("/api/public/share/limitedshare-token-0001", headers=CLIENT)
    second = await client.get("/api/public/share/limitedshare-token-0001", headers=CLIENT)

    assert first.status_code == 200
    assert second.status_code == 403
    assert second.json()["error"] == "view_limit_reached"


@pytest.mark.anyio
@pytest.mark.parametrize("token", ["short", "bad!token!value", "x" * 129])
async def test_malformed_token_is_422(client, school, store, token):
    response = await client.get(f"/api/public/share/{token}", headers=CLIENT)

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"
    assert len(store) == 0


@pytest.mark.anyio
async def test_repeated_misses_get_reduced_limit(client, school, audit_sink):
    statuses = []
    for _ in range(25):
        response = await client.get("/api/public/share/never-issued-token", headers=CLIENT)
        statuses.append(response.status_code)

    assert statuses == [404] * 25

    response = await client.get("/api/public/share/never-issued-token", headers=CLIENT)

    assert response.status_code == 429
    data = response.json()
    assert data["error"] == "Rate limit exceeded"
    assert data["limit"] == 25
    assert data["remaining"] == 0
    assert "reduced limit due to suspicious activity" in data["message"]
    assert response.headers["X-RateLimit-Limit"] == "25"
    assert 3500 < int(response.headers["Retry-After"]) <= 3600
    assert "security.rate_limit.exceeded" in audit_sink.actions()

    again = await client.get("/api/public/share/never-issued-token", headers=CLIENT)
    assert again.status_code == 429
    assert audit_sink.actions()[-1] == "security.rate_limit.blocked"


@pytest.mark.anyio
async def test_clients_are_limited_separately(client, school):
    for _ in range(26):
        await client.get("/api/public/share/never-issued-token", headers=CLIENT)

    other = await client.get("/api/public/share/eventshare-token-0001", headers={"X-Forwarded-For": "198.51.100.77"})
    assert other.status_code == 200


# =============================================================================
# Family Galleries
# =============================================================================

@pytest.mark.anyio
async def test_gallery_student_success(client, school, store, audit_sink):
    response = await client.get("/api/family/gallery/student-token-0001", headers=CLIENT)

    assert response.status_code == 200
    data = response.json()
    assert data["kind"] == "student"
    assert data["token"]["token"] == "stu***"
    assert data["student"]["course"]["name"] == "3A"
    assert data["folder"] is None

    assert response.headers["X-RateLimit-Limit"] == "100"
    assert response.headers["X-RateLimit-Remaining"] == "99"
    assert audit_sink.actions() == ["auth.success"]

    # Successful gallery hits give their attempt back
    assert [entry.count for entry in store._entries.values()] == [0]


@pytest.mark.anyio
async def test_gallery_folder_and_subject(client, school):
    folder = await client.get("/api/family/gallery/foldershare-token-0001", headers=CLIENT)
    subject = await client.get("/api/family/gallery/subject-token-0001", headers=CLIENT)

    assert folder.status_code == 200
    assert folder.json()["kind"] == "folder"
    assert folder.json()["folder"]["id"] == "fld-1"
    assert subject.status_code == 200
    assert subject.json()["subject"]["name"] == "Familia Gomez"


@pytest.mark.anyio
async def test_gallery_rejects_event_share(client, school, audit_sink):
    response = await client.get("/api/family/gallery/eventshare-token-0001", headers=CLIENT)

    assert response.status_code == 403
    assert response.json()["error"] == "not_family_scope"
    assert audit_sink.actions() == ["security.unauthorized"]


@pytest.mark.anyio
async def test_gallery_unknown_token(client, school, audit_sink):
    response = await client.get("/api/family/gallery/never-issued-token", headers=CLIENT)

    assert response.status_code == 404
    assert audit_sink.actions() == ["token.not_found"]


@pytest.mark.anyio
async def test_gallery_expired_token(client, session, school):
    await add_expired_subject_token(session)

    response = await client.get("/api/family/gallery/subject-token-expired", headers=CLIENT)

    assert response.status_code == 410


@pytest.mark.anyio
async def test_gallery_rate_limited(app, client, school):
    reset_time = time.time() + 600
    app.state.rate_limiter.check_limit = AsyncMock(return_value=RateLimitResult(
        allowed=False,
        remaining=0,
        reset_time=reset_time,
        blocked=True,
        block_until=reset_time,
        limit=100,
    ))

    response = await client.get("/api/family/gallery/student-token-0001", headers=CLIENT)

    assert response.status_code == 429
    data = response.json()
    assert data["error"] == "Rate limit exceeded"
    assert data["message"] == "Too many gallery requests. Please slow down."
    assert data["limit"] == 100
    assert "Retry-After" in response.headers


# =============================================================================
# Share Passwords and View Metadata
# =============================================================================

async def add_locked_share(session, metadata=None):
    session.add(ShareToken(
        id="shr-locked",
        token="lockedshare-token-0001",
        event_id="evt-1",
        share_type="event",
        password_hash=hash_share_password("secret"),
        metadata_=metadata,
    ))
    await session.commit()


async def stored_view(session_factory, share_id):
    async with session_factory() as fresh:
        unified = (await fresh.execute(
            select(PublicAccessToken.view_count, PublicAccessToken.metadata_)
            .where(PublicAccessToken.share_token_id == share_id)
        )).one()
        legacy = (await fresh.execute(
            select(ShareToken.view_count, ShareToken.metadata_).where(ShareToken.id == share_id)
        )).one()
    return unified, legacy


@pytest.mark.anyio
async def test_locked_share_without_password_is_401(client, session, school, session_factory):
    await add_locked_share(session)

    response = await client.get("/api/public/share/lockedshare-token-0001", headers=CLIENT)

    assert response.status_code == 401
    assert response.json()["error"] == "password_required"
    unified, legacy = await stored_view(session_factory, "shr-locked")
    assert unified.view_count == 0
    assert legacy.view_count == 0


@pytest.mark.anyio
async def test_locked_share_wrong_password_is_403_and_tracked(app, client, session, school, audit_sink):
    await add_locked_share(session)

    response = await client.get(
        "/api/public/share/lockedshare-token-0001",
        headers={**CLIENT, "X-Share-Password": "guess"},
    )

    assert response.status_code == 403
    assert response.json()["error"] == "password_required"
    assert response.json()["message"] == "Incorrect password"
    assert app.state.suspicious_activity.get_failure_count("203.0.113.50") == 1

    assert audit_sink.actions() == ["auth.failure"]
    failure = audit_sink.entries[0]
    assert failure.metadata["reason"] == "invalid_password"
    assert failure.metadata["token"] == "loc***"


@pytest.mark.anyio
async def test_locked_share_with_password_is_served(client, session, school, session_factory):
    await add_locked_share(session)

    response = await client.get(
        "/api/public/share/lockedshare-token-0001",
        headers={**CLIENT, "X-Share-Password": "secret"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["token"]["view_count"] == 1
    assert data["token"]["requires_password"] is True
    assert "password_hash" not in data["token"]


@pytest.mark.anyio
async def test_share_view_records_access_metadata(client, session, school, session_factory):
    await add_locked_share(session, metadata={"campaign": "spring"})

    response = await client.get(
        "/api/public/share/lockedshare-token-0001",
        headers={**CLIENT, "X-Share-Password": "secret"},
    )
    assert response.status_code == 200

    unified, legacy = await stored_view(session_factory, "shr-locked")
    for view_count, metadata in (unified, legacy):
        assert view_count == 1
        assert metadata["campaign"] == "spring"
        assert metadata["last_ip"] == "203.0.113.50"
        assert metadata["last_accessed"].startswith(str(utcnow().year))
    assert "metadata" not in response.json()["token"]


# =============================================================================
# Token Redaction
# =============================================================================

@pytest.mark.anyio
async def test_access_tokens_never_reach_audit_or_logs(client, school, audit_sink, caplog):
    caplog.set_level(logging.INFO, logger="app")
    guessed = "guess-secret-token-xyz"

    await client.get("/api/public/share/eventshare-token-0001", headers=CLIENT)
    # 3 misses halve the limit to 25, the 26th request is blocked
    for _ in range(26):
        await client.get(f"/api/public/share/{guessed}", headers=CLIENT)

    view = audit_sink.entries[0]
    assert view.action.value == "share.view"
    assert view.path == "/api/public/share/eve***"

    exceeded = next(e for e in audit_sink.entries if e.action.value == "security.rate_limit.exceeded")
    assert exceeded.path == "/api/public/share/gue***"
    assert exceeded.metadata["rate_limit_key"].endswith(":/api/public/share/gue***")

    for entry in audit_sink.entries:
        serialized = entry.to_json()
        assert guessed not in serialized
        assert "eventshare-token-0001" not in serialized

    assert "Rate limit exceeded for" in caplog.text
    assert guessed not in caplog.text
    assert "eventshare-token-0001" not in caplog.text
