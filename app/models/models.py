"""
LookEscolar Database Models
SQLAlchemy ORM models for the access-control core.

The event/folder/subject/student/course tables and the three legacy token
tables are owned by upstream flows; the resolver only reads them, apart from
the bridge columns it writes back during hydration.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.core.time import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


# =============================================================================
# School Structure
# =============================================================================

class Event(Base):
    """A photo session at a school."""
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    date: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    school_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Folder(Base):
    """
    Photo folder inside an event.

    ``share_token`` is the oldest token generation: a token embedded directly
    on the folder row.
    """
    __tablename__ = "folders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_id: Mapped[str] = mapped_column(String(36), ForeignKey("events.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    share_token: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)

    # Bridge to the unified table
    public_access_token_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    legacy_public_access_migrated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("events.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(255))
    grade: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    section: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class Subject(Base):
    """A photographed family/person (older family model)."""
    __tablename__ = "subjects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("events.id"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    parent_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parent_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Student(Base):
    """A student enrolled in a course (newer family model)."""
    __tablename__ = "students"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_id: Mapped[str] = mapped_column(String(36), ForeignKey("events.id"), index=True)
    course_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("courses.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(255))
    grade: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    section: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    parent_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parent_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# =============================================================================
# Legacy Token Tables
# =============================================================================

class ShareToken(Base):
    """Event/folder/photo-list share links."""
    __tablename__ = "share_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    event_id: Mapped[str] = mapped_column(String(36), ForeignKey("events.id"), index=True)
    folder_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("folders.id"), nullable=True)
    photo_ids: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    share_type: Mapped[str] = mapped_column(String(20), default="event")  # event, folder, photos
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    allow_download: Mapped[bool] = mapped_column(Boolean, default=False)
    allow_comments: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    max_views: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    public_access_token_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    legacy_migrated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class SubjectToken(Base):
    __tablename__ = "subject_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    subject_id: Mapped[str] = mapped_column(String(36), ForeignKey("subjects.id"), index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    public_access_token_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    legacy_migrated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class StudentToken(Base):
    __tablename__ = "student_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    student_id: Mapped[str] = mapped_column(String(36), ForeignKey("students.id"), index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    public_access_token_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    legacy_migrated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# =============================================================================
# Unified Token Registry
# =============================================================================

class PublicAccessToken(Base):
    """
    Unified access token.

    The row layout is the wire format other services read, so column names
    follow the shared schema exactly.
    """
    __tablename__ = "public_access_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    # share_event, share_folder, share_photos, folder_share, family_subject, family_student
    access_type: Mapped[str] = mapped_column(String(32), index=True)

    event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    share_token_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    subject_token_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    student_token_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    folder_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    subject_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    student_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    share_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    photo_ids: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    allow_download: Mapped[bool] = mapped_column(Boolean, default=False)
    allow_comments: Mapped[bool] = mapped_column(Boolean, default=False)

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    max_views: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    is_legacy: Mapped[bool] = mapped_column(Boolean, default=True)
    legacy_source: Mapped[str] = mapped_column(String(32))  # share_tokens, subject_tokens, student_tokens, folders
    legacy_reference: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    legacy_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    legacy_migrated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# Security Log (audit sink)
# =============================================================================

class SecurityLog(Base):
    """Persisted audit/security events. Rows are append-only."""
    __tablename__ = "security_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    severity: Mapped[str] = mapped_column(String(16), index=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)  # IPv6 max length
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    request_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
