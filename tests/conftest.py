"""
Shared fixtures: in-memory database, fake clock, recording audit sink and
an app wired to all three.
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.audit import AuditLogger, AuditSink
from app.core.config import Settings
from app.core.database import Base, build_engine, build_session_factory
from app.core.rate_limit_store import InMemoryRateLimitStore
from app.core.time import utcnow
from app.models.models import (
    Course,
    Event,
    Folder,
    ShareToken,
    Student,
    StudentToken,
    Subject,
    SubjectToken,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink(AuditSink):
    name = "recording"

    def __init__(self):
        self.entries = []

    async def write(self, entry) -> None:
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [entry.action.value for entry in self.entries]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_sink():
    return RecordingSink()


@pytest.fixture
def audit_logger(audit_sink):
    return AuditLogger([audit_sink])


@pytest.fixture
async def engine():
    import app.models.models  # noqa: F401

    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def school(session):
    """
    One event with every legacy token generation:
    event share, folder share, photo share, student token, subject token and
    a folder-embedded token.
    """
    now = utcnow()

    event = Event(id="evt-1", name="Spring Photos 2025", school_name="Escuela Norte", status="active")
    folder = Folder(
        id="fld-1",
        event_id=event.id,
        name="Sala Azul",
        path="/spring/sala-azul",
        is_published=True,
        share_token="abc123legacyfolder",
    )
    course = Course(id="crs-1", event_id=event.id, name="3A", grade="3", section="A")
    student = Student(
        id="stu-1",
        event_id=event.id,
        course_id=course.id,
        name="Lucia Perez",
        parent_email="familia.perez@example.com",
    )
    subject = Subject(id="sub-1", event_id=event.id, name="Familia Gomez")

    event_share = ShareToken(
        id="shr-event",
        token="eventshare-token-0001",
        event_id=event.id,
        share_type="event",
        title="Whole event",
        allow_download=True,
        view_count=0,
        is_active=True,
        created_at=now - timedelta(days=2),
    )
    folder_share = ShareToken(
        id="shr-folder",
        token="foldershare-token-0001",
        event_id=event.id,
        folder_id=folder.id,
        share_type="folder",
        view_count=0,
        is_active=True,
        created_at=now - timedelta(days=1),
    )
    photo_share = ShareToken(
        id="shr-photos",
        token="photoshare-token-0001",
        event_id=event.id,
        share_type="photos",
        photo_ids=["p-1", "p-2"],
        view_count=0,
        is_active=True,
        created_at=now,
    )
    student_token = StudentToken(id="stt-1", token="student-token-0001", student_id=student.id)
    subject_token = SubjectToken(
        id="sjt-1",
        token="subject-token-0001",
        subject_id=subject.id,
        expires_at=now + timedelta(days=30),
    )

    session.add_all([event, folder, course, student, subject])
    await session.flush()
    session.add_all([event_share, folder_share, photo_share, student_token, subject_token])
    await session.commit()

    return SimpleNamespace(
        event=event,
        folder=folder,
        course=course,
        student=student,
        subject=subject,
        event_share=event_share,
        folder_share=folder_share,
        photo_share=photo_share,
        student_token=student_token,
        subject_token=subject_token,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        audit_log_dir=str(tmp_path / "audit"),
        audit_to_database=False,
        redis_url=None,
    )


@pytest.fixture
def store():
    return InMemoryRateLimitStore()


@pytest.fixture
def app(settings, store, audit_logger, engine):
    from app.main import create_app

    return create_app(settings=settings, store=store, audit_logger=audit_logger, engine=engine)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client