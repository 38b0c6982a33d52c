"""Shared pytest fixtures for engine tests."""

import random
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from quiz_engine.api.deps import get_attempt_service, get_collaborators
from quiz_engine.core.security import create_access_token
from quiz_engine.db import models  # noqa: F401  (registers tables)
from quiz_engine.db.models import Question, Quiz, QuizPool, RoleEnum
from quiz_engine.db.session import Base, get_db
from quiz_engine.main import app
from quiz_engine.services.access import Actor
from quiz_engine.services.attempts import AttemptService
from quiz_engine.services.collaborators import Collaborators, TeacherScope
from quiz_engine.services.rate_limiter import require_attempt_rate_limit


# Use an in-memory SQLite database for testing with static pool
SQLALCHEMY_TEST_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,  # Use StaticPool to keep connection alive
    echo=False,
)
TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)


# ── Fakes ──────────────────────────────────────────────────────────────────────


class FakePlatform:
    """In-memory enrollment, progress and teaching-scope answers."""

    def __init__(self) -> None:
        self.not_enrolled: set[tuple[uuid.UUID, uuid.UUID]] = set()
        self.videos_pending: set[tuple[uuid.UUID, uuid.UUID]] = set()
        self.extra_attempts: dict[tuple[uuid.UUID, uuid.UUID], int] = {}
        self.teacher_scopes: dict[uuid.UUID, TeacherScope] = {}
        self.department_courses: dict[uuid.UUID, set[uuid.UUID]] = {}
        self.school_courses: dict[uuid.UUID, set[uuid.UUID]] = {}

    def is_enrolled(self, student_id, course_id) -> bool:
        return (student_id, course_id) not in self.not_enrolled

    def all_videos_watched(self, student_id, unit_id) -> bool:
        return unit_id is None or (student_id, unit_id) not in self.videos_pending

    def granted_extra_attempts(self, student_id, unit_id) -> int:
        return self.extra_attempts.get((student_id, unit_id), 0)

    def teacher_scope(self, teacher_id) -> TeacherScope:
        return self.teacher_scopes.get(teacher_id, TeacherScope())

    def department_course_ids(self, hod_id) -> set[uuid.UUID]:
        return self.department_courses.get(hod_id, set())

    def school_course_ids(self, dean_id) -> set[uuid.UUID]:
        return self.school_courses.get(dean_id, set())

    def teaches_course(self, teacher_id, course_id) -> bool:
        return course_id in self.teacher_scope(teacher_id).course_ids


class RecordingNotifier:
    def __init__(self) -> None:
        self.passed: list[tuple[uuid.UUID, uuid.UUID | None]] = []
        self.graded: list[tuple[uuid.UUID, dict]] = []

    def on_quiz_passed(self, student_id, unit_id) -> None:
        self.passed.append((student_id, unit_id))

    def on_attempt_graded(self, attempt_id, summary) -> None:
        self.graded.append((attempt_id, summary))


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture(scope="function")
def db():
    """Fresh schema and session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestSession()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def collaborators(platform: FakePlatform, notifier: RecordingNotifier) -> Collaborators:
    return Collaborators(
        enrollment=platform, progress=platform, scope=platform, notifier=notifier
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def service(db: Session, collaborators: Collaborators, clock: FakeClock) -> AttemptService:
    return AttemptService(db, collaborators, clock=clock, rng=random.Random(1234))


@pytest.fixture
def course_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def student() -> Actor:
    return Actor(id=uuid.uuid4(), role=RoleEnum.STUDENT)


@pytest.fixture
def make_quiz(db: Session, course_id: uuid.UUID):
    """Factory: a quiz with ``n`` one-point questions whose answer is option 0."""

    def _make(
        n: int = 10,
        *,
        course: uuid.UUID | None = None,
        unit_id: uuid.UUID | None = None,
        passing_score: float | None = None,
        time_limit_minutes: int | None = None,
        questions_per_attempt: int | None = None,
        points: float = 1.0,
    ) -> Quiz:
        quiz = Quiz(
            course_id=course or course_id,
            unit_id=unit_id,
            title="Unit quiz",
            passing_score=passing_score,
            time_limit_minutes=time_limit_minutes,
            questions_per_attempt=questions_per_attempt,
        )
        quiz.questions = [
            Question(
                text=f"Question {i + 1}?",
                options=["right", "wrong", "also wrong", "nope"],
                correct_option=0,
                points=points,
                position=i,
            )
            for i in range(n)
        ]
        db.add(quiz)
        db.commit()
        db.refresh(quiz)
        return quiz

    return _make


@pytest.fixture
def make_pool(db: Session, course_id: uuid.UUID):
    def _make(
        quizzes: list[Quiz],
        *,
        questions_per_attempt: int = 10,
        unit_id: uuid.UUID | None = None,
        is_active: bool = True,
        passing_score: float = 70.0,
    ) -> QuizPool:
        pool = QuizPool(
            course_id=course_id,
            unit_id=unit_id,
            title="Unit pool",
            questions_per_attempt=questions_per_attempt,
            time_limit_minutes=30,
            passing_score=passing_score,
            is_active=is_active,
        )
        pool.quizzes = list(quizzes)
        db.add(pool)
        db.commit()
        db.refresh(pool)
        return pool

    return _make


def auth_headers(actor: Actor) -> dict:
    token = create_access_token({"sub": str(actor.id), "role": actor.role.value})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers():
    return auth_headers


@pytest.fixture(scope="function")
def client(db: Session, collaborators: Collaborators, clock: FakeClock):
    """FastAPI test client with overridden DB, collaborators and clock."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_collaborators] = lambda: collaborators
    app.dependency_overrides[get_attempt_service] = lambda: AttemptService(
        db, collaborators, clock=clock, rng=random.Random(99)
    )
    app.dependency_overrides[require_attempt_rate_limit] = lambda: None

    # Remove TrustedHostMiddleware for tests to allow 'testserver' host
    app.user_middleware = [m for m in app.user_middleware if "TrustedHost" not in str(m)]

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
