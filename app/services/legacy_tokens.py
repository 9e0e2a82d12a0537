"""
Legacy Token Adapters

One adapter per pre-unification token generation. Each knows how to find a
token in its own table, translate the record into a ``UnifiedTokenPayload``
and write the bridge columns back once the unified row exists.

``LEGACY_ADAPTERS`` is the lookup order used by the resolver. Share tokens
come first because they are the most general; folder-embedded tokens are the
most specific and come last.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.models import Folder, ShareToken, Student, StudentToken, Subject, SubjectToken
from app.services.access_types import (
    AccessType,
    LegacySource,
    UnifiedTokenPayload,
    share_type_to_access_type,
)

logger = logging.getLogger(__name__)


def _not_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is None or expires_at > now


class LegacyTokenAdapter(ABC):
    """Reads one legacy token table and maps it onto the unified shape."""

    source: LegacySource

    @abstractmethod
    async def find(self, session: AsyncSession, token: str) -> Optional[Any]:
        """Return the legacy record for ``token``, or None."""

    @abstractmethod
    async def build_payload(self, session: AsyncSession, record: Any, now: datetime) -> UnifiedTokenPayload:
        ...

    @abstractmethod
    async def write_bridge(
        self,
        session: AsyncSession,
        record: Any,
        public_access_id: str,
        migrated_at: datetime,
    ) -> None:
        """Point the legacy record at its unified row."""

    @staticmethod
    def _payload_id(record: Any) -> str:
        return record.public_access_token_id or str(uuid.uuid4())


class ShareTokenAdapter(LegacyTokenAdapter):
    source = LegacySource.SHARE_TOKENS

    async def find(self, session: AsyncSession, token: str) -> Optional[ShareToken]:
        result = await session.execute(select(ShareToken).where(ShareToken.token == token))
        return result.scalar_one_or_none()

    async def find_by_id(self, session: AsyncSession, share_token_id: str) -> Optional[ShareToken]:
        return await session.get(ShareToken, share_token_id)

    @staticmethod
    def _scope(record: ShareToken) -> AccessType:
        """Share scope, widened to the whole event when its folder or photo list is missing."""
        access_type = share_type_to_access_type(record.share_type)
        missing = (
            (access_type == AccessType.SHARE_FOLDER and not record.folder_id)
            or (access_type == AccessType.SHARE_PHOTOS and not record.photo_ids)
        )
        if missing:
            logger.warning(
                "Share %s has share_type=%s without its context; hydrating as an event share",
                record.id,
                record.share_type,
            )
            return AccessType.SHARE_EVENT
        return access_type

    async def build_payload(self, session: AsyncSession, record: ShareToken, now: datetime) -> UnifiedTokenPayload:
        access_type = self._scope(record)
        return UnifiedTokenPayload(
            id=self._payload_id(record),
            token=record.token,
            access_type=access_type,
            event_id=record.event_id,
            share_token_id=record.id,
            folder_id=record.folder_id,
            share_type=record.share_type if access_type != AccessType.SHARE_EVENT else "event",
            photo_ids=record.photo_ids or None,
            title=record.title,
            description=record.description,
            password_hash=record.password_hash,
            metadata=dict(record.metadata_ or {}),
            allow_download=bool(record.allow_download),
            allow_comments=bool(record.allow_comments),
            expires_at=record.expires_at,
            max_views=record.max_views,
            view_count=record.view_count or 0,
            is_active=True if record.is_active is None else record.is_active,
            is_legacy=True,
            legacy_source=self.source,
            legacy_reference=record.id,
            legacy_payload={"share_type": record.share_type, "photo_ids": record.photo_ids},
            legacy_migrated_at=record.legacy_migrated_at or now,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
        )

    async def write_bridge(self, session, record, public_access_id, migrated_at) -> None:
        await session.execute(
            update(ShareToken)
            .where(ShareToken.id == record.id)
            .values(public_access_token_id=public_access_id, legacy_migrated_at=migrated_at)
            .execution_options(synchronize_session=False)
        )


class StudentTokenAdapter(LegacyTokenAdapter):
    source = LegacySource.STUDENT_TOKENS

    async def find(self, session: AsyncSession, token: str) -> Optional[StudentToken]:
        result = await session.execute(select(StudentToken).where(StudentToken.token == token))
        return result.scalar_one_or_none()

    async def build_payload(self, session: AsyncSession, record: StudentToken, now: datetime) -> UnifiedTokenPayload:
        event_id = await session.scalar(select(Student.event_id).where(Student.id == record.student_id))
        return UnifiedTokenPayload(
            id=self._payload_id(record),
            token=record.token,
            access_type=AccessType.FAMILY_STUDENT,
            event_id=event_id,
            student_token_id=record.id,
            student_id=record.student_id,
            expires_at=record.expires_at,
            is_active=_not_expired(record.expires_at, now),
            is_legacy=True,
            legacy_source=self.source,
            legacy_reference=record.id,
            legacy_payload={"student_id": record.student_id},
            legacy_migrated_at=record.legacy_migrated_at or now,
            created_at=record.created_at or now,
            updated_at=record.created_at or now,
        )

    async def write_bridge(self, session, record, public_access_id, migrated_at) -> None:
        await session.execute(
            update(StudentToken)
            .where(StudentToken.id == record.id)
            .values(public_access_token_id=public_access_id, legacy_migrated_at=migrated_at)
            .execution_options(synchronize_session=False)
        )


class SubjectTokenAdapter(LegacyTokenAdapter):
    source = LegacySource.SUBJECT_TOKENS

    async def find(self, session: AsyncSession, token: str) -> Optional[SubjectToken]:
        result = await session.execute(select(SubjectToken).where(SubjectToken.token == token))
        return result.scalar_one_or_none()

    async def build_payload(self, session: AsyncSession, record: SubjectToken, now: datetime) -> UnifiedTokenPayload:
        event_id = await session.scalar(select(Subject.event_id).where(Subject.id == record.subject_id))
        return UnifiedTokenPayload(
            id=self._payload_id(record),
            token=record.token,
            access_type=AccessType.FAMILY_SUBJECT,
            event_id=event_id,
            subject_token_id=record.id,
            subject_id=record.subject_id,
            expires_at=record.expires_at,
            is_active=_not_expired(record.expires_at, now),
            is_legacy=True,
            legacy_source=self.source,
            legacy_reference=record.id,
            legacy_payload={"subject_id": record.subject_id},
            legacy_migrated_at=record.legacy_migrated_at or now,
            created_at=record.created_at or now,
            updated_at=record.updated_at or record.created_at or now,
        )

    async def write_bridge(self, session, record, public_access_id, migrated_at) -> None:
        await session.execute(
            update(SubjectToken)
            .where(SubjectToken.id == record.id)
            .values(public_access_token_id=public_access_id, legacy_migrated_at=migrated_at)
            .execution_options(synchronize_session=False)
        )


class FolderTokenAdapter(LegacyTokenAdapter):
    """Tokens embedded directly on ``folders.share_token``."""

    source = LegacySource.FOLDERS

    async def find(self, session: AsyncSession, token: str) -> Optional[Folder]:
        result = await session.execute(select(Folder).where(Folder.share_token == token))
        return result.scalar_one_or_none()

    async def build_payload(self, session: AsyncSession, record: Folder, now: datetime) -> UnifiedTokenPayload:
        if not record.share_token:
            raise ValueError(f"Folder {record.id} has no share_token")
        return UnifiedTokenPayload(
            id=self._payload_id(record),
            token=record.share_token,
            access_type=AccessType.FOLDER_SHARE,
            event_id=record.event_id,
            folder_id=record.id,
            is_active=bool(record.is_published),
            is_legacy=True,
            legacy_source=self.source,
            legacy_reference=record.id,
            legacy_payload={
                "name": record.name,
                "is_published": record.is_published,
                "published_at": record.published_at.isoformat() if record.published_at else None,
            },
            legacy_migrated_at=record.legacy_public_access_migrated_at or now,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
        )

    async def write_bridge(self, session, record, public_access_id, migrated_at) -> None:
        await session.execute(
            update(Folder)
            .where(Folder.id == record.id)
            .values(public_access_token_id=public_access_id, legacy_public_access_migrated_at=migrated_at)
            .execution_options(synchronize_session=False)
        )


LEGACY_ADAPTERS: tuple[LegacyTokenAdapter, ...] = (
    ShareTokenAdapter(),
    StudentTokenAdapter(),
    SubjectTokenAdapter(),
    FolderTokenAdapter(),
)
