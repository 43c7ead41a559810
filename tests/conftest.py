"""Shared test fixtures."""

from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coursetrack.activity.models import ActivityLog, ActivityStatus
from coursetrack.auth.models import User, UserRole
from coursetrack.courses.models import CourseAssignment, Module
from coursetrack.database.base import Base
from coursetrack.integrations.queue import JobQueue, MemoryJobStore, Queues
from coursetrack.notifications.service import NotificationDispatcher

# Models must be imported so Base.metadata.create_all() sees all tables.
_ALL_MODELS = [User, Module, CourseAssignment, ActivityLog]

# 2024-01-01 00:00 UTC, a Monday (ISO week 1 of 2024)
T0 = 1_704_067_200.0


class FakeMailer:
    """Records sends instead of talking to an SMTP relay."""

    def __init__(self, fail_times: int = 0) -> None:
        self.sent: list[dict] = []
        self.fail_times = fail_times
        self.calls = 0

    def send(self, to: str, subject: str, html: str, text: str = "") -> dict:
        self.calls += 1
        if self.calls <= self.fail_times:
            return {"success": False, "error": "relay unavailable"}
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return {"success": True, "messageId": f"<msg-{self.calls}@test>"}


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = T0) -> None:
        self.ms = int(start * 1000)

    def __call__(self) -> float:
        return self.ms / 1000

    def advance_ms(self, ms: int) -> None:
        self.ms += ms


@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session the code under test opens."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, expire_on_commit=False)
    finally:
        engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queues(clock):
    return Queues(*(JobQueue(name, MemoryJobStore(), attempts=3, backoff_ms=2000, clock=clock)
                    for name in ("notifications", "reminders", "alerts")))


@pytest.fixture
def dispatcher(queues):
    return NotificationDispatcher(queues)


@pytest.fixture
def mailer():
    return FakeMailer()


def _user(db, email, first, last, role, is_active=True):
    user = User(email=email, first_name=first, last_name=last, role=role, is_active=is_active)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def facilitator(db_session):
    return _user(db_session, "ada@example.edu", "Ada", "Lovelace", UserRole.FACILITATOR)


@pytest.fixture
def managers(db_session):
    return [
        _user(db_session, "grace@example.edu", "Grace", "Hopper", UserRole.MANAGER),
        _user(db_session, "alan@example.edu", "Alan", "Turing", UserRole.MANAGER),
        _user(db_session, "retired@example.edu", "Old", "Boss", UserRole.MANAGER, is_active=False),
    ]


@pytest.fixture
def module(db_session):
    mod = Module(code="CS101", name="Intro to Programming", credits=15)
    db_session.add(mod)
    db_session.commit()
    return mod


@pytest.fixture
def assignment(db_session, facilitator, module):
    alloc = CourseAssignment(
        module_id=module.id,
        facilitator_id=facilitator.id,
        trimester="T1",
        intake_period="2024-JAN",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 4, 30),
    )
    db_session.add(alloc)
    db_session.commit()
    return alloc


@pytest.fixture
def make_log(db_session, assignment):
    """Factory for activity logs on the default assignment."""

    def _make(week, year=2024, submitted_at=None, is_active=True, **fields):
        log = ActivityLog(
            assignment_id=assignment.id,
            facilitator_id=assignment.facilitator_id,
            week_number=week,
            year=year,
            attendance=[],
            formative_one_grading=ActivityStatus.DONE,
            formative_two_grading=ActivityStatus.PENDING,
            submitted_at=submitted_at,
            is_active=is_active,
            **fields,
        )
        db_session.add(log)
        db_session.commit()
        return log

    return _make
