"""SQLAlchemy ORM models for the secure quiz engine.

Tables
------
- quizzes                 – authored quizzes (course / unit scoped)
- questions               – multiple-choice questions of a quiz
- quiz_pools              – randomized pools drawing from several quizzes
- pool_quizzes            – pool ↔ quiz association with ordering
- attempts                – one student sitting with a frozen question snapshot
- security_audit_records  – classified proctoring violations per attempt
- quiz_locks              – per (student, quiz) lock + escalation counters
- quiz_unlock_events      – append-only unlock history of a lock
- audit_logs              – engine-level audit trail

Users, courses, units and enrollment live in the course platform; only
their ids are stored here.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from quiz_engine.db.session import Base


# ── helpers ───────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> uuid.UUID:
    return uuid.uuid4()


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Enums (stored as VARCHAR via SQLAlchemy Enum) ─────────────────────────────


class RoleEnum(str, enum.Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    HOD = "hod"
    DEAN = "dean"
    ADMIN = "admin"


class AttemptModeEnum(str, enum.Enum):
    SECURE = "secure"
    UNIT = "unit"


class FailureReasonEnum(str, enum.Enum):
    BELOW_PASSING_SCORE = "BELOW_PASSING_SCORE"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    TIME_EXCEEDED = "TIME_EXCEEDED"
    MANUAL_LOCK = "MANUAL_LOCK"


class AuthorizationLevelEnum(str, enum.Enum):
    TEACHER = "TEACHER"
    HOD = "HOD"
    DEAN = "DEAN"


class UnlockTierEnum(str, enum.Enum):
    TEACHER = "TEACHER"
    HOD = "HOD"
    DEAN = "DEAN"
    ADMIN = "ADMIN"


class ViolationTypeEnum(str, enum.Enum):
    TAB_SWITCH = "TAB_SWITCH"
    FULLSCREEN_EXIT = "FULLSCREEN_EXIT"
    WINDOW_MINIMIZE = "WINDOW_MINIMIZE"
    KEYBOARD_SHORTCUT = "KEYBOARD_SHORTCUT"
    CONTEXT_MENU = "CONTEXT_MENU"
    CLIPBOARD_ACCESS = "CLIPBOARD_ACCESS"
    DEVTOOLS_DETECTED = "DEVTOOLS_DETECTED"
    SUSPICIOUS_TIMING = "SUSPICIOUS_TIMING"
    AUTO_SUBMIT = "AUTO_SUBMIT"
    OTHER = "OTHER"


class SeverityEnum(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ViolationActionEnum(str, enum.Enum):
    WARNING = "WARNING"
    PENALTY = "PENALTY"
    AUTO_SUBMIT = "AUTO_SUBMIT"
    DISQUALIFICATION = "DISQUALIFICATION"


# ── Quizzes & questions ───────────────────────────────────────────────────────


class Quiz(Base):
    __tablename__ = "quizzes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    unit_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    title: Mapped[str] = mapped_column(String(255))
    time_limit_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    passing_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    # When set, each attempt samples this many questions instead of all of them.
    questions_per_attempt: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    questions: Mapped[list["Question"]] = relationship(
        back_populates="quiz",
        cascade="all, delete-orphan",
        order_by="Question.position",
    )


class Question(Base):
    __tablename__ = "questions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    quiz_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("quizzes.id", ondelete="CASCADE")
    )
    text: Mapped[str] = mapped_column(Text)
    options: Mapped[list[str]] = mapped_column(JSON)
    correct_option: Mapped[int] = mapped_column(Integer)
    points: Mapped[float] = mapped_column(Float, default=1.0)
    position: Mapped[int] = mapped_column(Integer, default=0)

    quiz: Mapped["Quiz"] = relationship(back_populates="questions")

    __table_args__ = (
        CheckConstraint("correct_option >= 0", name="ck_question_correct_option"),
        CheckConstraint("points >= 0", name="ck_question_points"),
    )


pool_quizzes = Table(
    "pool_quizzes",
    Base.metadata,
    Column(
        "pool_id",
        UUID(as_uuid=True),
        ForeignKey("quiz_pools.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "quiz_id",
        UUID(as_uuid=True),
        ForeignKey("quizzes.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("position", Integer, default=0),
)


class QuizPool(Base):
    __tablename__ = "quiz_pools"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    unit_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    title: Mapped[str] = mapped_column(String(255))
    questions_per_attempt: Mapped[int] = mapped_column(Integer, default=10)
    time_limit_minutes: Mapped[int] = mapped_column(Integer, default=30)
    passing_score: Mapped[float] = mapped_column(Float, default=70.0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    quizzes: Mapped[list["Quiz"]] = relationship(
        secondary=pool_quizzes, order_by=pool_quizzes.c.position
    )

    __table_args__ = (
        CheckConstraint(
            "questions_per_attempt >= 5 AND questions_per_attempt <= 30",
            name="ck_pool_questions_per_attempt",
        ),
    )


# ── Attempts ──────────────────────────────────────────────────────────────────


class Attempt(Base):
    __tablename__ = "attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    student_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    unit_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    quiz_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("quizzes.id"), nullable=True
    )
    pool_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("quiz_pools.id"), nullable=True
    )
    # Unit-level quiz identity (pool id or quiz id); locks are keyed on it.
    source_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    mode: Mapped[AttemptModeEnum] = mapped_column(
        Enum(AttemptModeEnum, name="attempt_mode_enum"), default=AttemptModeEnum.SECURE
    )

    questions: Mapped[list[dict]] = mapped_column(JSON)
    answers: Mapped[list[dict] | None] = mapped_column(JSON, nullable=True)

    score: Mapped[float] = mapped_column(Float, default=0.0)
    max_score: Mapped[float] = mapped_column(Float, default=0.0)
    percentage: Mapped[float] = mapped_column(Float, default=0.0)
    raw_score: Mapped[float] = mapped_column(Float, default=0.0)
    raw_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    penalty: Mapped[float] = mapped_column(Float, default=0.0)
    passed: Mapped[bool] = mapped_column(Boolean, default=False)
    passing_score: Mapped[float] = mapped_column(Float, default=70.0)
    time_limit_minutes: Mapped[int] = mapped_column(Integer, default=30)

    security_settings: Mapped[dict] = mapped_column(JSON, default=dict)
    security_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    is_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    time_exceeded: Mapped[bool] = mapped_column(Boolean, default=False)

    violations: Mapped[list["SecurityAuditRecord"]] = relationship(
        back_populates="attempt"
    )

    __table_args__ = (
        CheckConstraint(
            "percentage >= 0 AND percentage <= 100", name="ck_attempt_percentage"
        ),
        Index(
            "uq_attempt_open_per_source",
            "student_id",
            "source_id",
            unique=True,
            sqlite_where=text("is_complete = 0"),
            postgresql_where=text("is_complete = false"),
        ),
    )


# ── Security audit ────────────────────────────────────────────────────────────


class SecurityAuditRecord(Base):
    """One classified proctoring violation; only resolution fields may change."""

    __tablename__ = "security_audit_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    student_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    unit_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    attempt_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("attempts.id"), index=True
    )
    violation_type: Mapped[ViolationTypeEnum] = mapped_column(
        Enum(ViolationTypeEnum, name="violation_type_enum")
    )
    severity: Mapped[SeverityEnum] = mapped_column(
        Enum(SeverityEnum, name="severity_enum")
    )
    description: Mapped[str] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    penalty_applied: Mapped[float] = mapped_column(Float, default=0.0)
    action: Mapped[ViolationActionEnum] = mapped_column(
        Enum(ViolationActionEnum, name="violation_action_enum"),
        default=ViolationActionEnum.WARNING,
    )
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    attempt: Mapped["Attempt"] = relationship(back_populates="violations")


# ── Locks ─────────────────────────────────────────────────────────────────────


class LockRecord(Base):
    __tablename__ = "quiz_locks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    student_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    quiz_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)
    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True)

    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    failure_reason: Mapped[FailureReasonEnum | None] = mapped_column(
        Enum(FailureReasonEnum, name="failure_reason_enum"), nullable=True
    )
    last_failure_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    passing_score: Mapped[float] = mapped_column(Float, default=70.0)
    lock_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    authorization_level: Mapped[AuthorizationLevelEnum] = mapped_column(
        Enum(AuthorizationLevelEnum, name="authorization_level_enum"),
        default=AuthorizationLevelEnum.TEACHER,
    )

    teacher_unlock_count: Mapped[int] = mapped_column(Integer, default=0)
    hod_unlock_count: Mapped[int] = mapped_column(Integer, default=0)
    dean_unlock_count: Mapped[int] = mapped_column(Integer, default=0)
    admin_unlock_count: Mapped[int] = mapped_column(Integer, default=0)

    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    unlock_events: Mapped[list["UnlockEvent"]] = relationship(
        back_populates="lock",
        cascade="all, delete-orphan",
        order_by="UnlockEvent.unlocked_at",
    )

    __table_args__ = (
        UniqueConstraint("student_id", "quiz_id", name="uq_lock_student_quiz"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def total_unlocks(self) -> int:
        return (
            self.teacher_unlock_count
            + self.hod_unlock_count
            + self.dean_unlock_count
            + self.admin_unlock_count
        )

    def history_for(self, tier: UnlockTierEnum) -> list["UnlockEvent"]:
        return [e for e in self.unlock_events if e.tier == tier]


class UnlockEvent(Base):
    """Append-only unlock history entry."""

    __tablename__ = "quiz_unlock_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    lock_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("quiz_locks.id", ondelete="CASCADE"), index=True
    )
    tier: Mapped[UnlockTierEnum] = mapped_column(
        Enum(UnlockTierEnum, name="unlock_tier_enum")
    )
    actor_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True))
    unlocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    reason: Mapped[str] = mapped_column(Text)
    notes: Mapped[str] = mapped_column(Text, default="")
    # Admin overrides record the level and reason they bypassed.
    overridden_level: Mapped[AuthorizationLevelEnum | None] = mapped_column(
        Enum(AuthorizationLevelEnum, name="authorization_level_enum"), nullable=True
    )
    lock_reason: Mapped[FailureReasonEnum | None] = mapped_column(
        Enum(FailureReasonEnum, name="failure_reason_enum"), nullable=True
    )

    lock: Mapped["LockRecord"] = relationship(back_populates="unlock_events")


# ── Audit log ─────────────────────────────────────────────────────────────────


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    action: Mapped[str] = mapped_column(String(64), index=True)
    performed_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
