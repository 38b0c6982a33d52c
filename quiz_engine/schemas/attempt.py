"""Attempt schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from quiz_engine.db.models import AttemptModeEnum, FailureReasonEnum


class AttemptCreate(BaseModel):
    """POST /api/attempts — start a sitting of a quiz or pool."""

    source_id: uuid.UUID
    mode: AttemptModeEnum = AttemptModeEnum.SECURE


# ── Proctoring signals (untrusted client input) ───────────────────────────────


class ViolationEvent(BaseModel):
    """A single client-reported proctoring event, e.g. ``tab-switch``."""

    type: str
    timestamp: datetime | None = None
    details: dict[str, Any] = {}


class SecuritySignals(BaseModel):
    violations: list[ViolationEvent] = []
    tab_switch_count: int = Field(0, ge=0)
    fullscreen_exits: int = Field(0, ge=0)
    blocked_shortcut_count: int = Field(0, ge=0)
    window_minimize_count: int = Field(0, ge=0)
    auto_submitted: bool = False


class AnswerSubmit(BaseModel):
    question_id: str
    selected_option: int | None = None


class AttemptSubmit(BaseModel):
    """POST /api/attempts/{id}/submit."""

    answers: list[AnswerSubmit] = []
    security: SecuritySignals = SecuritySignals()


# ── Responses ─────────────────────────────────────────────────────────────────


class QuestionRead(BaseModel):
    """Snapshot question as shown while the attempt is open (no answer key)."""

    question_id: str
    text: str
    options: list[str]
    points: float


class AttemptView(BaseModel):
    """GET /api/attempts/{id} — an attempt with its timer."""

    id: uuid.UUID
    student_id: uuid.UUID
    source_id: uuid.UUID
    course_id: uuid.UUID
    unit_id: uuid.UUID | None = None
    mode: AttemptModeEnum
    questions: list[QuestionRead]
    time_limit_minutes: int
    passing_score: float
    security_settings: dict[str, Any]
    started_at: datetime
    ends_at: datetime
    remaining_seconds: int
    is_complete: bool


class AttemptSummary(BaseModel):
    """Row in a student's attempt list."""

    id: uuid.UUID
    source_id: uuid.UUID
    mode: AttemptModeEnum
    score: float
    max_score: float
    percentage: float
    raw_percentage: float
    penalty: float
    passed: bool
    is_complete: bool
    time_exceeded: bool
    started_at: datetime
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class SubmissionResult(BaseModel):
    """Graded outcome returned by submit."""

    attempt_id: uuid.UUID
    score: float
    max_score: float
    percentage: float
    raw_score: float
    raw_percentage: float
    penalty: float
    penalty_breakdown: dict[str, float] = {}
    passed: bool
    passing_score: float
    time_exceeded: bool = False
    violations_recorded: int = 0
    quiz_locked: bool = False
    lock_reason: FailureReasonEnum | None = None
    completed_at: datetime


class QuestionResult(BaseModel):
    question_id: str
    text: str
    options: list[str]
    correct_option: int
    selected_option: int | None = None
    is_correct: bool
    points: float
    points_earned: float


class AttemptResults(BaseModel):
    """GET /api/attempts/{id}/results — graded attempt with answer key."""

    attempt: AttemptSummary
    questions: list[QuestionResult]


class LockInfo(BaseModel):
    is_locked: bool
    failure_reason: FailureReasonEnum | None = None
    authorization_level: str
    total_unlocks: int


class AvailabilityRead(BaseModel):
    """GET /api/attempts/availability/{source_id}."""

    source_id: uuid.UUID
    available: bool
    blocked_by: str | None = None
    passed: bool = False
    all_videos_watched: bool = True
    attempts_taken: int
    attempt_limit: int
    remaining_attempts: int
    cooldown_remaining_hours: int | None = None
    open_attempt_id: uuid.UUID | None = None
    lock: LockInfo | None = None
