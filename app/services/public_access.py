"""
Public Access Service

Resolves opaque access tokens to a normalized ``ResolvedAccess``.

Lookup order:
1. ``public_access_tokens`` by token.
2. On a miss, each legacy adapter in ``LEGACY_ADAPTERS`` order. The first
   match is hydrated: upserted into the unified table (conflict on token),
   bridged back onto the legacy row, then re-read.
3. Context (folder, subject, student with course, event) is loaded for the
   unified row.

A token unknown everywhere resolves to None with no writes. Database
failures are raised as ``StorageError``.
"""

import hashlib
import hmac
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit import mask_token
from app.core.errors import StorageError
from app.core.time import utcnow
from app.models.models import Course, Event, Folder, PublicAccessToken, ShareToken, Student, Subject
from app.services.access_types import (
    FOLDER_ACCESS_TYPES,
    SHARE_ACCESS_TYPES,
    AccessTokenInfo,
    AccessType,
    CourseSummary,
    EventSummary,
    FamilyAccessRejection,
    FamilyAccessResolution,
    FolderSummary,
    LegacySource,
    ResolvedAccess,
    ShareSettings,
    ShareTokenView,
    StudentSummary,
    SubjectSummary,
    UnifiedTokenPayload,
)
from app.services.legacy_tokens import LEGACY_ADAPTERS, LegacyTokenAdapter, ShareTokenAdapter

logger = logging.getLogger(__name__)

# Columns left untouched when an upsert hits an existing token
_UPSERT_IMMUTABLE = frozenset({"id", "token", "created_at"})


def hash_share_password(password: str) -> str:
    """Hex sha256, the format stored in ``password_hash``."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def share_password_matches(password: Optional[str], password_hash: Optional[str]) -> bool:
    """True when no password is set, or ``password`` hashes to ``password_hash``."""
    if not password_hash:
        return True
    if not password:
        return False
    return hmac.compare_digest(hash_share_password(password), password_hash)


@contextmanager
def _storage_errors(operation: str, token: Optional[str] = None):
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(
            "%s failed for token %s: %s",
            operation,
            mask_token(token) if token else "-",
            e.__class__.__name__,
        )
        raise StorageError(operation, e.__class__.__name__) from e


class PublicAccessService:
    """
    Token resolution and share bookkeeping on one session.

    The caller owns the transaction; the service flushes but never commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        adapters: Iterable[LegacyTokenAdapter] = LEGACY_ADAPTERS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.adapters = tuple(adapters)
        self.clock = clock

    # =========================================================================
    # Unified Table
    # =========================================================================

    async def _fetch_by_token(self, token: str) -> Optional[PublicAccessToken]:
        result = await self.session.execute(
            select(PublicAccessToken)
            .where(PublicAccessToken.token == token)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _fetch_by_share_id(self, share_token_id: str) -> Optional[PublicAccessToken]:
        result = await self.session.execute(
            select(PublicAccessToken)
            .where(PublicAccessToken.share_token_id == share_token_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    def _insert_for_dialect(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise NotImplementedError(f"Upsert not supported on {dialect}")

    async def _upsert(self, payload: UnifiedTokenPayload) -> None:
        insert = self._insert_for_dialect()
        row = payload.to_row()
        table = PublicAccessToken.__table__
        stmt = insert(table).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.token],
            set_={key: stmt.excluded[key] for key in row if key not in _UPSERT_IMMUTABLE},
        )
        await self.session.execute(stmt)

    # =========================================================================
    # Hydration
    # =========================================================================

    async def _hydrate(self, adapter: LegacyTokenAdapter, record: Any) -> Optional[PublicAccessToken]:
        payload = await adapter.build_payload(self.session, record, self.clock())
        await self._upsert(payload)

        row = await self._fetch_by_token(payload.token)
        if row is None:
            return None

        await adapter.write_bridge(self.session, record, row.id, payload.legacy_migrated_at)
        await self.session.flush()

        logger.info(
            "Hydrated legacy token %s from %s into %s",
            mask_token(payload.token),
            adapter.source.value,
            row.id,
        )
        return row

    async def _hydrate_legacy_token(self, token: str) -> Optional[PublicAccessToken]:
        for adapter in self.adapters:
            record = await adapter.find(self.session, token)
            if record is not None:
                return await self._hydrate(adapter, record)
        return None

    async def _fetch_or_hydrate(self, token: str) -> Optional[PublicAccessToken]:
        row = await self._fetch_by_token(token)
        if row is None:
            row = await self._hydrate_legacy_token(token)
        return row

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve_access_token(self, token: str) -> Optional[ResolvedAccess]:
        """Resolve ``token`` to its access context. None when unknown."""
        with _storage_errors("resolve_access_token", token):
            row = await self._fetch_or_hydrate(token)
            if row is None:
                return None
            return await self._build_resolved(row)

    async def resolve_family_access(
        self, token: str
    ) -> FamilyAccessResolution | FamilyAccessRejection | None:
        """
        Narrow a token to a folder, student or subject.

        Returns None only for unknown tokens. Known tokens that are not
        family-facing, or whose context row is missing, return a
        ``FamilyAccessRejection`` saying which.
        """
        resolved = await self.resolve_access_token(token)
        if resolved is None:
            return None

        info = resolved.token
        common = {"token": info, "event": resolved.event}

        if info.access_type in FOLDER_ACCESS_TYPES:
            if resolved.folder is None:
                return FamilyAccessRejection(reason="context_unavailable", token=info)
            return FamilyAccessResolution(kind="folder", folder=resolved.folder, **common)

        if info.access_type == AccessType.FAMILY_STUDENT:
            if resolved.student is None:
                return FamilyAccessRejection(reason="context_unavailable", token=info)
            return FamilyAccessResolution(kind="student", student=resolved.student, **common)

        if info.access_type == AccessType.FAMILY_SUBJECT:
            if resolved.subject is None:
                return FamilyAccessRejection(reason="context_unavailable", token=info)
            return FamilyAccessResolution(kind="subject", subject=resolved.subject, **common)

        return FamilyAccessRejection(reason="not_family_scope", token=info)

    async def _build_resolved(self, row: PublicAccessToken) -> ResolvedAccess:
        folder, subject, student, event = await self._build_context(row)

        share = None
        if row.share_token_id:
            share = ShareSettings(
                share_type=row.share_type,
                folder_id=row.folder_id,
                photo_ids=row.photo_ids,
                allow_download=bool(row.allow_download),
                allow_comments=bool(row.allow_comments),
            )

        return ResolvedAccess(
            token=_token_info(row),
            event=event,
            share=share,
            folder=folder,
            subject=subject,
            student=student,
        )

    async def _build_context(self, row: PublicAccessToken):
        folder_summary = None
        subject_summary = None
        student_summary = None
        event_id = row.event_id

        folder = None
        if row.folder_id:
            folder = await self.session.get(Folder, row.folder_id)
        elif row.access_type == AccessType.FOLDER_SHARE.value:
            result = await self.session.execute(select(Folder).where(Folder.share_token == row.token))
            folder = result.scalar_one_or_none()
        if folder is not None:
            folder_summary = FolderSummary(
                id=folder.id,
                name=folder.name,
                event_id=folder.event_id,
                is_published=bool(folder.is_published),
                path=folder.path,
            )
            event_id = event_id or folder.event_id

        if row.subject_id:
            subject = await self.session.get(Subject, row.subject_id)
            if subject is not None:
                subject_summary = SubjectSummary(
                    id=subject.id,
                    name=subject.name,
                    event_id=subject.event_id,
                    created_at=subject.created_at,
                    parent_name=subject.parent_name,
                    parent_email=subject.parent_email,
                )
                event_id = event_id or subject.event_id

        if row.student_id:
            student = await self.session.get(Student, row.student_id)
            if student is not None:
                course_summary = None
                if student.course_id:
                    course = await self.session.get(Course, student.course_id)
                    if course is not None:
                        course_summary = CourseSummary(
                            id=course.id,
                            name=course.name,
                            grade=course.grade,
                            section=course.section,
                        )
                student_summary = StudentSummary(
                    id=student.id,
                    name=student.name,
                    event_id=student.event_id,
                    course_id=student.course_id,
                    grade=student.grade,
                    section=student.section,
                    parent_name=student.parent_name,
                    parent_email=student.parent_email,
                    created_at=student.created_at,
                    course=course_summary,
                )
                event_id = event_id or student.event_id

        event_summary = None
        if event_id:
            event = await self.session.get(Event, event_id)
            if event is not None:
                event_summary = EventSummary(
                    id=event.id,
                    name=event.name,
                    date=event.date,
                    status=event.status,
                    school_name=event.school_name,
                )

        return folder_summary, subject_summary, student_summary, event_summary

    # =========================================================================
    # Views
    # =========================================================================

    async def record_share_view(
        self,
        public_access_id: str,
        share_token_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        """
        Count one view on the unified row and, when given, the legacy share row.

        ``metadata`` replaces the stored blob on both rows; callers merge it
        with the current one. The increment happens in SQL, so concurrent
        calls never lose a view. Returns the unified row's new view count.
        """
        now = self.clock()

        def view_values(model) -> dict:
            values = {model.view_count: model.view_count + 1, model.updated_at: now}
            if metadata is not None:
                values[model.metadata_] = metadata
            return values

        with _storage_errors("record_share_view"):
            await self.session.execute(
                update(PublicAccessToken)
                .where(PublicAccessToken.id == public_access_id)
                .values(view_values(PublicAccessToken))
                .execution_options(synchronize_session=False)
            )
            if share_token_id:
                await self.session.execute(
                    update(ShareToken)
                    .where(ShareToken.id == share_token_id)
                    .values(view_values(ShareToken))
                    .execution_options(synchronize_session=False)
                )
            view_count = await self.session.scalar(
                select(PublicAccessToken.view_count).where(PublicAccessToken.id == public_access_id)
            )
        return view_count or 0

    # =========================================================================
    # Share Tokens
    # =========================================================================

    async def get_share_token_by_token(self, token: str) -> Optional[ShareTokenView]:
        with _storage_errors("get_share_token_by_token", token):
            row = await self._fetch_or_hydrate(token)
        if row is None or not row.share_token_id:
            return None
        return ShareTokenView.from_row(row)

    async def get_share_token_by_id(self, share_token_id: str) -> Optional[ShareTokenView]:
        with _storage_errors("get_share_token_by_id"):
            row = await self._fetch_by_share_id(share_token_id)
            if row is None:
                adapter = self._share_adapter()
                share = await adapter.find_by_id(self.session, share_token_id)
                if share is not None:
                    await self._hydrate(adapter, share)
                    row = await self._fetch_by_share_id(share_token_id)
        if row is None or not row.share_token_id:
            return None
        return ShareTokenView.from_row(row)

    async def list_event_share_tokens(self, event_id: str) -> list[ShareTokenView]:
        """Share tokens of an event, newest first."""
        with _storage_errors("list_event_share_tokens"):
            result = await self.session.execute(
                select(PublicAccessToken)
                .where(
                    PublicAccessToken.event_id == event_id,
                    PublicAccessToken.access_type.in_([t.value for t in SHARE_ACCESS_TYPES]),
                )
                .order_by(PublicAccessToken.created_at.desc())
                .execution_options(populate_existing=True)
            )
            rows = result.scalars().all()
        return [ShareTokenView.from_row(row) for row in rows]

    async def set_share_active_state(self, share_token_id: str, is_active: bool) -> Optional[ShareTokenView]:
        """Enable or disable a share on both the unified and legacy rows."""
        now = self.clock()
        with _storage_errors("set_share_active_state"):
            row = await self._fetch_by_share_id(share_token_id)
            if row is None:
                return None
            await self.session.execute(
                update(PublicAccessToken)
                .where(PublicAccessToken.id == row.id)
                .values(is_active=is_active, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(
                update(ShareToken)
                .where(ShareToken.id == share_token_id)
                .values(is_active=is_active, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            row = await self._fetch_by_share_id(share_token_id)

        logger.info("Share %s set active=%s", share_token_id, is_active)
        return ShareTokenView.from_row(row)

    def _share_adapter(self) -> ShareTokenAdapter:
        for adapter in self.adapters:
            if isinstance(adapter, ShareTokenAdapter):
                return adapter
        return ShareTokenAdapter()


def _token_info(row: PublicAccessToken) -> AccessTokenInfo:
    return AccessTokenInfo(
        token=row.token,
        public_access_id=row.id,
        access_type=AccessType(row.access_type),
        legacy_source=LegacySource(row.legacy_source),
        share_token_id=row.share_token_id,
        is_legacy=bool(row.is_legacy),
        is_active=bool(row.is_active),
        expires_at=row.expires_at,
        max_views=row.max_views,
        view_count=row.view_count or 0,
        password_hash=row.password_hash,
        metadata=dict(row.metadata_) if isinstance(row.metadata_, dict) else {},
    )
