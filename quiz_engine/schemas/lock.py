"""Lock & unlock schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from quiz_engine.db.models import (
    AuthorizationLevelEnum,
    FailureReasonEnum,
    UnlockTierEnum,
)


class UnlockRequest(BaseModel):
    """POST /api/locks/{lock_id}/unlock."""

    reason: str = Field(..., min_length=1, max_length=1000)
    notes: str = Field("", max_length=2000)


class UnlockEventRead(BaseModel):
    id: uuid.UUID
    tier: UnlockTierEnum
    actor_id: uuid.UUID
    unlocked_at: datetime
    reason: str
    notes: str
    overridden_level: AuthorizationLevelEnum | None = None
    lock_reason: FailureReasonEnum | None = None

    model_config = {"from_attributes": True}


class LockRead(BaseModel):
    id: uuid.UUID
    student_id: uuid.UUID
    quiz_id: uuid.UUID
    course_id: uuid.UUID
    is_locked: bool
    failure_reason: FailureReasonEnum | None = None
    last_failure_score: float | None = None
    passing_score: float
    lock_timestamp: datetime | None = None
    authorization_level: AuthorizationLevelEnum
    teacher_unlock_count: int
    hod_unlock_count: int
    dean_unlock_count: int
    admin_unlock_count: int
    total_attempts: int
    last_attempt_score: float | None = None
    last_attempt_at: datetime | None = None

    model_config = {"from_attributes": True}


class LockStatus(BaseModel):
    """Lock state plus what each tier can still do."""

    student_id: uuid.UUID
    quiz_id: uuid.UUID
    is_locked: bool
    lock: LockRead | None = None
    can_teacher_unlock: bool = False
    can_hod_unlock: bool = False
    can_dean_unlock: bool = False
    remaining_teacher_unlocks: int
    remaining_hod_unlocks: int
    remaining_dean_unlocks: int | None = None  # None = uncapped


class UnlockHistory(BaseModel):
    lock_id: uuid.UUID
    teacher: list[UnlockEventRead] = []
    hod: list[UnlockEventRead] = []
    dean: list[UnlockEventRead] = []
    admin: list[UnlockEventRead] = []


class UnlockResult(BaseModel):
    lock: LockRead
    event: UnlockEventRead


class ActorUnlockRead(BaseModel):
    """One unlock the caller granted, with the lock it applied to."""

    event: UnlockEventRead
    lock_id: uuid.UUID
    student_id: uuid.UUID
    quiz_id: uuid.UUID
    course_id: uuid.UUID
    authorization_level: AuthorizationLevelEnum
    is_locked: bool
