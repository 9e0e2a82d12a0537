"""
Access Token Types

Shapes produced by the unified resolver. Every legacy token generation is
normalized into these before any caller sees it.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional


class AccessType(str, Enum):
    SHARE_EVENT = "share_event"
    SHARE_FOLDER = "share_folder"
    SHARE_PHOTOS = "share_photos"
    FOLDER_SHARE = "folder_share"
    FAMILY_SUBJECT = "family_subject"
    FAMILY_STUDENT = "family_student"


SHARE_ACCESS_TYPES = (AccessType.SHARE_EVENT, AccessType.SHARE_FOLDER, AccessType.SHARE_PHOTOS)
FOLDER_ACCESS_TYPES = (AccessType.SHARE_FOLDER, AccessType.FOLDER_SHARE)


class LegacySource(str, Enum):
    SHARE_TOKENS = "share_tokens"
    SUBJECT_TOKENS = "subject_tokens"
    STUDENT_TOKENS = "student_tokens"
    FOLDERS = "folders"


def share_type_to_access_type(share_type: Optional[str]) -> AccessType:
    if share_type == "folder":
        return AccessType.SHARE_FOLDER
    if share_type == "photos":
        return AccessType.SHARE_PHOTOS
    return AccessType.SHARE_EVENT


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


# Kept on AccessTokenInfo for the routers; never serialized
_PRIVATE_TOKEN_FIELDS = ("password_hash", "metadata")


def _public_dict(result) -> dict[str, Any]:
    data = asdict(result)
    for key in _PRIVATE_TOKEN_FIELDS:
        data["token"].pop(key, None)
    data["token"]["requires_password"] = bool(result.token.password_hash)
    return _jsonable(data)


# =============================================================================
# Context Summaries
# =============================================================================

@dataclass(frozen=True)
class EventSummary:
    id: str
    name: str
    date: Optional[str] = None
    status: Optional[str] = None
    school_name: Optional[str] = None


@dataclass(frozen=True)
class FolderSummary:
    id: str
    name: str
    event_id: str
    is_published: bool
    path: Optional[str] = None


@dataclass(frozen=True)
class SubjectSummary:
    id: str
    name: str
    event_id: Optional[str]
    created_at: Optional[datetime] = None
    parent_name: Optional[str] = None
    parent_email: Optional[str] = None


@dataclass(frozen=True)
class CourseSummary:
    id: str
    name: str
    grade: Optional[str] = None
    section: Optional[str] = None


@dataclass(frozen=True)
class StudentSummary:
    id: str
    name: str
    event_id: str
    course_id: Optional[str] = None
    grade: Optional[str] = None
    section: Optional[str] = None
    parent_name: Optional[str] = None
    parent_email: Optional[str] = None
    created_at: Optional[datetime] = None
    course: Optional[CourseSummary] = None


@dataclass(frozen=True)
class ShareSettings:
    share_type: Optional[str]
    folder_id: Optional[str]
    photo_ids: Optional[list[str]]
    allow_download: bool = False
    allow_comments: bool = False


# =============================================================================
# Resolution Results
# =============================================================================

@dataclass(frozen=True)
class AccessTokenInfo:
    token: str
    public_access_id: str
    access_type: AccessType
    legacy_source: LegacySource
    share_token_id: Optional[str] = None
    is_legacy: bool = False
    is_active: bool = False
    expires_at: Optional[datetime] = None
    max_views: Optional[int] = None
    view_count: int = 0
    password_hash: Optional[str] = field(default=None, repr=False)
    metadata: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ResolvedAccess:
    """
    A token resolved to its unified row plus denormalized context.

    Expired and inactive tokens are still returned; callers decide how to
    answer (410 for expired, 403 for disabled).
    """

    token: AccessTokenInfo
    event: Optional[EventSummary] = None
    share: Optional[ShareSettings] = None
    folder: Optional[FolderSummary] = None
    subject: Optional[SubjectSummary] = None
    student: Optional[StudentSummary] = None

    def is_expired(self, now: datetime) -> bool:
        return self.token.expires_at is not None and self.token.expires_at <= now

    @property
    def views_exhausted(self) -> bool:
        return self.token.max_views is not None and self.token.view_count >= self.token.max_views

    def to_dict(self) -> dict[str, Any]:
        return _public_dict(self)


@dataclass(frozen=True)
class FamilyAccessResolution:
    """A token narrowed to exactly one family-facing context."""

    kind: Literal["folder", "student", "subject"]
    token: AccessTokenInfo
    event: Optional[EventSummary] = None
    folder: Optional[FolderSummary] = None
    student: Optional[StudentSummary] = None
    subject: Optional[SubjectSummary] = None

    def to_dict(self) -> dict[str, Any]:
        return _public_dict(self)


@dataclass(frozen=True)
class FamilyAccessRejection:
    """
    The token exists but cannot be used as family access.

    ``not_family_scope``: the access type is not family-facing (an event or
    photo-list share, for example).
    ``context_unavailable``: the folder/student/subject it points to is gone.
    """

    reason: Literal["not_family_scope", "context_unavailable"]
    token: AccessTokenInfo


# =============================================================================
# Share Tokens
# =============================================================================

@dataclass(frozen=True)
class ShareTokenView:
    """A share-type unified row, keyed by its legacy share id."""

    id: str  # share_tokens.id
    public_access_id: str
    token: str
    access_type: AccessType
    event_id: str
    folder_id: Optional[str]
    photo_ids: Optional[list[str]]
    share_type: str
    title: Optional[str]
    description: Optional[str]
    password_hash: Optional[str]
    expires_at: Optional[datetime]
    max_views: Optional[int]
    view_count: int
    allow_download: bool
    allow_comments: bool
    metadata: dict[str, Any]
    is_active: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    is_legacy: bool
    legacy_source: LegacySource
    legacy_reference: Optional[str]

    @classmethod
    def from_row(cls, row) -> "ShareTokenView":
        return cls(
            id=row.share_token_id or row.id,
            public_access_id=row.id,
            token=row.token,
            access_type=AccessType(row.access_type),
            event_id=row.event_id or "",
            folder_id=row.folder_id,
            photo_ids=row.photo_ids,
            share_type=row.share_type or "event",
            title=row.title,
            description=row.description,
            password_hash=row.password_hash,
            expires_at=row.expires_at,
            max_views=row.max_views,
            view_count=row.view_count or 0,
            allow_download=bool(row.allow_download),
            allow_comments=bool(row.allow_comments),
            metadata=row.metadata_ if isinstance(row.metadata_, dict) else {},
            is_active=bool(row.is_active),
            created_at=row.created_at,
            updated_at=row.updated_at,
            is_legacy=bool(row.is_legacy),
            legacy_source=LegacySource(row.legacy_source),
            legacy_reference=row.legacy_reference,
        )


# =============================================================================
# Hydration Payload
# =============================================================================

@dataclass(frozen=True)
class UnifiedTokenPayload:
    """
    Row to upsert into ``public_access_tokens`` for a legacy token.

    Each access type carries exactly its own context reference.
    """

    id: str
    token: str
    access_type: AccessType
    legacy_source: LegacySource
    legacy_reference: Optional[str]
    legacy_migrated_at: datetime
    event_id: Optional[str] = None
    share_token_id: Optional[str] = None
    subject_token_id: Optional[str] = None
    student_token_id: Optional[str] = None
    folder_id: Optional[str] = None
    subject_id: Optional[str] = None
    student_id: Optional[str] = None
    share_type: Optional[str] = None
    photo_ids: Optional[list[str]] = None
    title: Optional[str] = None
    description: Optional[str] = None
    password_hash: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    allow_download: bool = False
    allow_comments: bool = False
    expires_at: Optional[datetime] = None
    max_views: Optional[int] = None
    view_count: int = 0
    is_active: bool = True
    is_legacy: bool = True
    legacy_payload: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        access_type = AccessType(self.access_type)
        family = access_type in (AccessType.FAMILY_SUBJECT, AccessType.FAMILY_STUDENT)

        if access_type == AccessType.FAMILY_SUBJECT and not self.subject_id:
            raise ValueError("family_subject token requires subject_id")
        if access_type == AccessType.FAMILY_STUDENT and not self.student_id:
            raise ValueError("family_student token requires student_id")
        if access_type in FOLDER_ACCESS_TYPES and not self.folder_id:
            raise ValueError(f"{access_type.value} token requires folder_id")
        if access_type == AccessType.SHARE_PHOTOS and not self.photo_ids:
            raise ValueError("share_photos token requires photo_ids")
        if access_type in SHARE_ACCESS_TYPES and not self.event_id:
            raise ValueError(f"{access_type.value} token requires event_id")

        if family and (self.folder_id or self.photo_ids):
            raise ValueError("family tokens cannot reference folders or photos")
        if not family and (self.subject_id or self.student_id):
            raise ValueError(f"{access_type.value} token cannot reference a subject or student")
        if self.subject_id and self.student_id:
            raise ValueError("token cannot reference both a subject and a student")

    def to_row(self) -> dict[str, Any]:
        """Column-name mapping for a Core insert."""
        row = asdict(self)
        row["access_type"] = AccessType(self.access_type).value
        row["legacy_source"] = LegacySource(self.legacy_source).value
        for key in ("created_at", "updated_at"):
            if row[key] is None:
                row[key] = self.legacy_migrated_at
        return row
