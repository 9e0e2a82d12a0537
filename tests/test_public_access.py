"""
Tests for the unified token resolver, legacy hydration and share bookkeeping.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.errors import StorageError
from app.core.time import utcnow
from app.models.models import Folder, PublicAccessToken, ShareToken, StudentToken, SubjectToken
from app.services.access_types import (
    AccessType,
    FamilyAccessRejection,
    FamilyAccessResolution,
    LegacySource,
    UnifiedTokenPayload,
)
from app.services.public_access import PublicAccessService, hash_share_password


@pytest.fixture
def service(session):
    return PublicAccessService(session)


async def unified_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(PublicAccessToken))


# =============================================================================
# Resolution
# =============================================================================

@pytest.mark.anyio
async def test_unknown_token_resolves_to_none_without_writes(service, session, school):
    assert await service.resolve_access_token("never-issued-token") is None
    assert await unified_count(session) == 0


@pytest.mark.anyio
async def test_folder_token_is_hydrated(service, session, school):
    resolved = await service.resolve_access_token("abc123legacyfolder")

    assert resolved is not None
    assert resolved.token.access_type == AccessType.FOLDER_SHARE
    assert resolved.token.legacy_source == LegacySource.FOLDERS
    assert resolved.token.is_legacy is True
    assert resolved.token.is_active is True
    assert resolved.folder.id == "fld-1"
    assert resolved.folder.is_published is True
    assert resolved.event.id == "evt-1"
    assert resolved.event.school_name == "Escuela Norte"
    assert resolved.share is None

    bridge = await session.scalar(select(Folder.public_access_token_id).where(Folder.id == "fld-1"))
    assert bridge == resolved.token.public_access_id


@pytest.mark.anyio
async def test_hydration_is_idempotent(service, session, school):
    first = await service.resolve_access_token("subject-token-0001")
    second = await service.resolve_access_token("subject-token-0001")

    assert first.token.public_access_id == second.token.public_access_id
    assert await unified_count(session) == 1


@pytest.mark.anyio
async def test_share_tokens_win_token_collisions(service, session, school):
    session.add(StudentToken(id="stt-dup", token="eventshare-token-0001", student_id="stu-1"))
    await session.commit()

    resolved = await service.resolve_access_token("eventshare-token-0001")

    assert resolved.token.access_type == AccessType.SHARE_EVENT
    assert resolved.token.legacy_source == LegacySource.SHARE_TOKENS
    assert resolved.token.share_token_id == "shr-event"
    assert resolved.share.allow_download is True

    bridge = await session.scalar(select(StudentToken.public_access_token_id).where(StudentToken.id == "stt-dup"))
    assert bridge is None


@pytest.mark.anyio
async def test_student_token_carries_course(service, session, school):
    resolved = await service.resolve_access_token("student-token-0001")

    assert resolved.token.access_type == AccessType.FAMILY_STUDENT
    assert resolved.student.name == "Lucia Perez"
    assert resolved.student.course.name == "3A"
    assert resolved.event.id == "evt-1"
    assert resolved.subject is None
    assert resolved.folder is None

    row = await session.scalar(
        select(PublicAccessToken).where(PublicAccessToken.token == "student-token-0001")
    )
    assert row.student_token_id == "stt-1"
    assert row.subject_id is None


@pytest.mark.anyio
async def test_expired_token_still_resolves(service, session, school):
    session.add(SubjectToken(
        id="sjt-old",
        token="subject-token-expired",
        subject_id="sub-1",
        expires_at=utcnow() - timedelta(days=1),
    ))
    await session.commit()

    resolved = await service.resolve_access_token("subject-token-expired")

    assert resolved is not None
    assert resolved.is_expired(utcnow())
    assert resolved.token.is_active is False
    assert resolved.subject.name == "Familia Gomez"


@pytest.mark.anyio
async def test_photo_share_settings(service, school):
    resolved = await service.resolve_access_token("photoshare-token-0001")

    assert resolved.token.access_type == AccessType.SHARE_PHOTOS
    assert resolved.share.photo_ids == ["p-1", "p-2"]
    assert resolved.to_dict()["token"]["access_type"] == "share_photos"


@pytest.mark.anyio
async def test_password_hash_and_metadata_stay_out_of_payload(service, session, school):
    session.add(ShareToken(
        id="shr-locked",
        token="lockedshare-token-0001",
        event_id="evt-1",
        share_type="event",
        password_hash=hash_share_password("secret"),
        metadata_={"campaign": "spring"},
    ))
    await session.commit()

    resolved = await service.resolve_access_token("lockedshare-token-0001")

    assert resolved.token.password_hash == hash_share_password("secret")
    assert resolved.token.metadata == {"campaign": "spring"}
    token = resolved.to_dict()["token"]
    assert token["requires_password"] is True
    assert "password_hash" not in token
    assert "metadata" not in token


@pytest.mark.anyio
@pytest.mark.parametrize("share_type, photo_ids", [("folder", None), ("photos", []), ("photos", None)])
async def test_share_without_its_context_hydrates_as_event_share(service, session, school, share_type, photo_ids):
    session.add(ShareToken(
        id="shr-bare",
        token="bareshare-token-0001",
        event_id="evt-1",
        share_type=share_type,
        photo_ids=photo_ids,
    ))
    await session.commit()

    resolved = await service.resolve_access_token("bareshare-token-0001")

    assert resolved is not None
    assert resolved.token.access_type == AccessType.SHARE_EVENT
    assert resolved.event.id == "evt-1"
    assert resolved.folder is None

    legacy_payload = await session.scalar(
        select(PublicAccessToken.legacy_payload).where(PublicAccessToken.token == "bareshare-token-0001")
    )
    assert legacy_payload["share_type"] == share_type


# =============================================================================
# Family Access
# =============================================================================

@pytest.mark.anyio
async def test_family_access_kinds(service, school):
    folder = await service.resolve_family_access("foldershare-token-0001")
    assert isinstance(folder, FamilyAccessResolution)
    assert folder.kind == "folder"
    assert folder.folder.id == "fld-1"

    embedded = await service.resolve_family_access("abc123legacyfolder")
    assert embedded.kind == "folder"

    student = await service.resolve_family_access("student-token-0001")
    assert student.kind == "student"
    assert student.student.id == "stu-1"
    assert student.folder is None

    subject = await service.resolve_family_access("subject-token-0001")
    assert subject.kind == "subject"
    assert subject.subject.id == "sub-1"
    assert subject.event.id == "evt-1"


@pytest.mark.anyio
async def test_family_access_rejects_event_and_photo_shares(service, school):
    for token in ("eventshare-token-0001", "photoshare-token-0001"):
        result = await service.resolve_family_access(token)
        assert isinstance(result, FamilyAccessRejection)
        assert result.reason == "not_family_scope"


@pytest.mark.anyio
async def test_family_access_missing_folder(service, session, school):
    session.add(ShareToken(
        id="shr-orphan",
        token="orphanshare-token-0001",
        event_id="evt-1",
        folder_id="fld-deleted",
        share_type="folder",
    ))
    await session.commit()

    result = await service.resolve_family_access("orphanshare-token-0001")

    assert isinstance(result, FamilyAccessRejection)
    assert result.reason == "context_unavailable"


@pytest.mark.anyio
async def test_family_access_unknown_token(service, school):
    assert await service.resolve_family_access("never-issued-token") is None


# =============================================================================
# Views
# =============================================================================

@pytest.mark.anyio
async def test_record_share_view_counts_every_call(service, session, school):
    resolved = await service.resolve_access_token("eventshare-token-0001")

    counts = [
        await service.record_share_view(resolved.token.public_access_id, resolved.token.share_token_id)
        for _ in range(3)
    ]

    assert counts == [1, 2, 3]
    legacy = await session.scalar(select(ShareToken.view_count).where(ShareToken.id == "shr-event"))
    assert legacy == 3

    again = await service.resolve_access_token("eventshare-token-0001")
    assert again.token.view_count == 3


@pytest.mark.anyio
async def test_views_exhausted(service, session, school):
    session.add(ShareToken(
        id="shr-limited",
        token="limitedshare-token-0001",
        event_id="evt-1",
        share_type="event",
        max_views=1,
    ))
    await session.commit()

    resolved = await service.resolve_access_token("limitedshare-token-0001")
    assert not resolved.views_exhausted

    await service.record_share_view(resolved.token.public_access_id, resolved.token.share_token_id)
    resolved = await service.resolve_access_token("limitedshare-token-0001")
    assert resolved.views_exhausted


# =============================================================================
# Share Tokens
# =============================================================================

@pytest.mark.anyio
async def test_get_share_token_by_token(service, school):
    view = await service.get_share_token_by_token("photoshare-token-0001")

    assert view.id == "shr-photos"
    assert view.access_type == AccessType.SHARE_PHOTOS
    assert view.photo_ids == ["p-1", "p-2"]
    assert view.legacy_reference == "shr-photos"

    assert await service.get_share_token_by_token("student-token-0001") is None
    assert await service.get_share_token_by_token("never-issued-token") is None


@pytest.mark.anyio
async def test_get_share_token_by_id_hydrates(service, session, school):
    assert await unified_count(session) == 0

    view = await service.get_share_token_by_id("shr-folder")

    assert view.id == "shr-folder"
    assert view.folder_id == "fld-1"
    assert view.token == "foldershare-token-0001"
    assert await unified_count(session) == 1
    assert await service.get_share_token_by_id("shr-missing") is None


@pytest.mark.anyio
async def test_list_event_share_tokens_newest_first(service, school):
    for token in ("eventshare-token-0001", "foldershare-token-0001", "photoshare-token-0001", "student-token-0001"):
        await service.resolve_access_token(token)

    views = await service.list_event_share_tokens("evt-1")

    assert [view.id for view in views] == ["shr-photos", "shr-folder", "shr-event"]


@pytest.mark.anyio
async def test_set_share_active_state(service, session, school):
    await service.resolve_access_token("eventshare-token-0001")

    view = await service.set_share_active_state("shr-event", False)

    assert view.is_active is False
    legacy_active = await session.scalar(select(ShareToken.is_active).where(ShareToken.id == "shr-event"))
    assert legacy_active is False

    resolved = await service.resolve_access_token("eventshare-token-0001")
    assert resolved.token.is_active is False

    assert await service.set_share_active_state("shr-missing", True) is None


# =============================================================================
# Payload Invariants
# =============================================================================

def test_payload_requires_its_context():
    now = utcnow()
    common = {"id": "pat-1", "token": "t" * 20, "legacy_reference": None, "legacy_migrated_at": now}

    with pytest.raises(ValueError):
        UnifiedTokenPayload(access_type=AccessType.FAMILY_SUBJECT, legacy_source=LegacySource.SUBJECT_TOKENS, **common)
    with pytest.raises(ValueError):
        UnifiedTokenPayload(access_type=AccessType.SHARE_PHOTOS, legacy_source=LegacySource.SHARE_TOKENS, event_id="evt-1", **common)
    with pytest.raises(ValueError):
        UnifiedTokenPayload(access_type=AccessType.FOLDER_SHARE, legacy_source=LegacySource.FOLDERS, **common)


def test_payload_rejects_mixed_scopes():
    now = utcnow()
    common = {"id": "pat-1", "token": "t" * 20, "legacy_reference": None, "legacy_migrated_at": now}

    with pytest.raises(ValueError):
        UnifiedTokenPayload(
            access_type=AccessType.FAMILY_STUDENT,
            legacy_source=LegacySource.STUDENT_TOKENS,
            student_id="stu-1",
            folder_id="fld-1",
            **common,
        )
    with pytest.raises(ValueError):
        UnifiedTokenPayload(
            access_type=AccessType.SHARE_EVENT,
            legacy_source=LegacySource.SHARE_TOKENS,
            event_id="evt-1",
            subject_id="sub-1",
            **common,
        )


def test_payload_row_uses_column_names():
    now = utcnow()
    payload = UnifiedTokenPayload(
        id="pat-1",
        token="t" * 20,
        access_type=AccessType.SHARE_EVENT,
        legacy_source=LegacySource.SHARE_TOKENS,
        legacy_reference="shr-1",
        legacy_migrated_at=now,
        event_id="evt-1",
        metadata={"campaign": "spring"},
    )

    row = payload.to_row()

    assert row["access_type"] == "share_event"
    assert row["legacy_source"] == "share_tokens"
    assert row["metadata"] == {"campaign": "spring"}
    assert row["created_at"] == now
    assert row["updated_at"] == now


# =============================================================================
# Storage Failures
# =============================================================================

@pytest.mark.anyio
async def test_database_failure_raises_storage_error():
    session = MagicMock()
    session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("database is locked")))
    service = PublicAccessService(session)

    with pytest.raises(StorageError) as exc_info:
        await service.resolve_access_token("eventshare-token-0001")

    assert exc_info.value.status_code == 503
    assert exc_info.value.error_code == "storage_error"
