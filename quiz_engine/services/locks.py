"""Lock escalation state machine.

A ``LockRecord`` exists per (student, quiz).  Failing a quiz locks it at the
lowest tier that still has unlocks left:

    teacher (3 unlocks) -> HOD (HOD_UNLOCK_LIMIT) -> dean (uncapped by default)

Each tier may only unlock locks sitting at its own level.  Admins can unlock
anything without moving the level.  The level never goes back down, so a
student who burned through the teacher's unlocks stays at HOD or above.

Lock rows carry a ``version`` column; concurrent writers lose with
``StaleDataError`` and unlocks retry a bounded number of times.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from quiz_engine.config import settings
from quiz_engine.core.errors import (
    Conflict,
    LockNotFound,
    NotLocked,
    TierLimitExceeded,
)
from quiz_engine.db.models import (
    AuditLog,
    AuthorizationLevelEnum,
    FailureReasonEnum,
    LockRecord,
    UnlockEvent,
    UnlockTierEnum,
)

logger = logging.getLogger(__name__)

_LEVEL_ORDER = [
    AuthorizationLevelEnum.TEACHER,
    AuthorizationLevelEnum.HOD,
    AuthorizationLevelEnum.DEAN,
]

_COUNTER_FOR_TIER = {
    UnlockTierEnum.TEACHER: "teacher_unlock_count",
    UnlockTierEnum.HOD: "hod_unlock_count",
    UnlockTierEnum.DEAN: "dean_unlock_count",
    UnlockTierEnum.ADMIN: "admin_unlock_count",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def tier_limit(tier: UnlockTierEnum) -> int | None:
    """Unlock cap for a tier; ``None`` means uncapped."""
    if tier == UnlockTierEnum.TEACHER:
        return settings.TEACHER_UNLOCK_LIMIT
    if tier == UnlockTierEnum.HOD:
        return settings.HOD_UNLOCK_LIMIT
    if tier == UnlockTierEnum.DEAN:
        return settings.DEAN_UNLOCK_LIMIT or None
    return None


def remaining_unlocks(lock: LockRecord, tier: UnlockTierEnum) -> int | None:
    limit = tier_limit(tier)
    if limit is None:
        return None
    return max(0, limit - getattr(lock, _COUNTER_FOR_TIER[tier]))


# ── Pure transitions ──────────────────────────────────────────────────────────


def compute_authorization_level(lock: LockRecord) -> AuthorizationLevelEnum:
    """Tier required for the next unlock, never below the current one."""
    if (lock.teacher_unlock_count or 0) < settings.TEACHER_UNLOCK_LIMIT:
        computed = AuthorizationLevelEnum.TEACHER
    elif (lock.hod_unlock_count or 0) < settings.HOD_UNLOCK_LIMIT:
        computed = AuthorizationLevelEnum.HOD
    else:
        computed = AuthorizationLevelEnum.DEAN

    current = lock.authorization_level or AuthorizationLevelEnum.TEACHER
    return max(computed, current, key=_LEVEL_ORDER.index)


def record_attempt(lock: LockRecord, score: float, now: datetime) -> None:
    lock.total_attempts = (lock.total_attempts or 0) + 1
    lock.last_attempt_score = score
    lock.last_attempt_at = now


def lock_quiz(
    lock: LockRecord,
    reason: FailureReasonEnum,
    score: float,
    passing_score: float,
    now: datetime,
) -> None:
    lock.is_locked = True
    lock.failure_reason = reason
    lock.last_failure_score = score
    lock.passing_score = passing_score
    lock.lock_timestamp = now
    lock.authorization_level = compute_authorization_level(lock)


def clear_lock(lock: LockRecord) -> None:
    """A later pass lifts the lock; counters and level are kept."""
    lock.is_locked = False


def apply_unlock(
    lock: LockRecord,
    tier: UnlockTierEnum,
    actor_id: uuid.UUID,
    reason: str,
    notes: str,
    now: datetime,
) -> UnlockEvent:
    """Validate and apply an unlock on an in-memory lock record."""
    if not lock.is_locked:
        raise NotLocked(lock_id=lock.id)

    event = UnlockEvent(
        tier=tier,
        actor_id=actor_id,
        unlocked_at=now,
        reason=reason,
        notes=notes or "",
    )

    if tier == UnlockTierEnum.ADMIN:
        event.overridden_level = lock.authorization_level
        event.lock_reason = lock.failure_reason
    elif lock.failure_reason == FailureReasonEnum.SECURITY_VIOLATION:
        raise TierLimitExceeded(
            "Security violation locks can only be cleared by an admin",
            required_tier=UnlockTierEnum.ADMIN,
            attempted_tier=tier,
        )
    else:
        required = lock.authorization_level
        remaining = remaining_unlocks(lock, tier)
        if tier.value != required.value or remaining == 0:
            raise TierLimitExceeded(
                required_tier=required,
                attempted_tier=tier,
                remaining=remaining,
            )

    counter = _COUNTER_FOR_TIER[tier]
    setattr(lock, counter, (getattr(lock, counter) or 0) + 1)
    lock.is_locked = False
    lock.unlock_events.append(event)
    return event


# ── Persistence ───────────────────────────────────────────────────────────────


def find_lock(
    db: Session, student_id: uuid.UUID, quiz_id: uuid.UUID
) -> LockRecord | None:
    return (
        db.query(LockRecord)
        .filter(LockRecord.student_id == student_id, LockRecord.quiz_id == quiz_id)
        .first()
    )


def get_or_create_lock(
    db: Session,
    student_id: uuid.UUID,
    quiz_id: uuid.UUID,
    course_id: uuid.UUID,
    passing_score: float,
) -> LockRecord:
    """Row-locked lookup, inserting a fresh unlocked record when missing."""
    lock = (
        db.query(LockRecord)
        .filter(LockRecord.student_id == student_id, LockRecord.quiz_id == quiz_id)
        .with_for_update()
        .first()
    )
    if lock is not None:
        return lock

    lock = LockRecord(
        student_id=student_id,
        quiz_id=quiz_id,
        course_id=course_id,
        passing_score=passing_score,
        is_locked=False,
        authorization_level=AuthorizationLevelEnum.TEACHER,
        teacher_unlock_count=0,
        hod_unlock_count=0,
        dean_unlock_count=0,
        admin_unlock_count=0,
        total_attempts=0,
    )
    # A concurrent insert fails the unique constraint at flush time; the
    # submitting transaction turns that into a Conflict.
    db.add(lock)
    db.flush()
    return lock


def register_failure(
    db: Session,
    *,
    student_id: uuid.UUID,
    quiz_id: uuid.UUID,
    course_id: uuid.UUID,
    reason: FailureReasonEnum,
    score: float,
    passing_score: float,
    now: datetime,
) -> LockRecord:
    """Record a failed attempt and lock the quiz.  Caller commits."""
    lock = get_or_create_lock(db, student_id, quiz_id, course_id, passing_score)
    record_attempt(lock, score, now)
    lock_quiz(lock, reason, score, passing_score, now)
    logger.info(
        "Quiz %s locked for student %s (%s, score %.2f) at %s level",
        quiz_id, student_id, reason.value, score, lock.authorization_level.value,
    )
    return lock


def register_pass(
    db: Session,
    *,
    student_id: uuid.UUID,
    quiz_id: uuid.UUID,
    score: float,
    now: datetime,
) -> LockRecord | None:
    """Record a passing attempt and clear any existing lock.  Caller commits."""
    lock = find_lock(db, student_id, quiz_id)
    if lock is None:
        return None
    record_attempt(lock, score, now)
    if lock.is_locked:
        clear_lock(lock)
        logger.info("Quiz %s unlocked for student %s by passing", quiz_id, student_id)
    return lock


def unlock(
    db: Session,
    lock_id: uuid.UUID,
    *,
    tier: UnlockTierEnum,
    actor_id: uuid.UUID,
    reason: str,
    notes: str = "",
    now: datetime | None = None,
    authorize=None,
) -> tuple[LockRecord, UnlockEvent]:
    """Unlock a quiz at ``tier`` and commit, retrying on version conflicts.

    ``authorize`` is called with the freshly loaded lock before any change,
    so scope checks always see the current course / student.
    """
    retries = max(1, settings.LOCK_UPDATE_RETRIES)
    for attempt_no in range(1, retries + 1):
        lock = (
            db.query(LockRecord)
            .filter(LockRecord.id == lock_id)
            .with_for_update()
            .first()
        )
        if lock is None:
            db.rollback()
            raise LockNotFound(lock_id=lock_id)

        level_before = lock.authorization_level
        try:
            if authorize is not None:
                authorize(lock)
            event = apply_unlock(lock, tier, actor_id, reason, notes, now or _utcnow())
        except Exception:
            # Releases the FOR UPDATE row lock and discards partial changes
            db.rollback()
            raise
        db.add(
            AuditLog(
                action="quiz_unlocked",
                performed_by=actor_id,
                details={
                    "lock_id": str(lock.id),
                    "student_id": str(lock.student_id),
                    "quiz_id": str(lock.quiz_id),
                    "tier": tier.value,
                    "level": level_before.value,
                    "reason": reason,
                },
            )
        )
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.warning(
                "Lock %s changed concurrently (try %d/%d)", lock_id, attempt_no, retries
            )
            continue

        db.refresh(lock)
        db.refresh(event)
        logger.info(
            "Lock %s unlocked by %s %s (level %s)",
            lock_id, tier.value, actor_id, lock.authorization_level.value,
        )
        return lock, event

    raise Conflict("Lock was modified concurrently, please retry", lock_id=lock_id)


def lock_status(
    db: Session, student_id: uuid.UUID, quiz_id: uuid.UUID
) -> dict:
    lock = find_lock(db, student_id, quiz_id)
    status = {
        "student_id": student_id,
        "quiz_id": quiz_id,
        "is_locked": bool(lock and lock.is_locked),
        "lock": lock,
        "remaining_teacher_unlocks": settings.TEACHER_UNLOCK_LIMIT,
        "remaining_hod_unlocks": settings.HOD_UNLOCK_LIMIT,
        "remaining_dean_unlocks": tier_limit(UnlockTierEnum.DEAN),
    }
    if lock is None:
        return status

    status["remaining_teacher_unlocks"] = remaining_unlocks(lock, UnlockTierEnum.TEACHER)
    status["remaining_hod_unlocks"] = remaining_unlocks(lock, UnlockTierEnum.HOD)
    status["remaining_dean_unlocks"] = remaining_unlocks(lock, UnlockTierEnum.DEAN)
    if lock.is_locked and lock.failure_reason != FailureReasonEnum.SECURITY_VIOLATION:
        for tier, key in (
            (UnlockTierEnum.TEACHER, "can_teacher_unlock"),
            (UnlockTierEnum.HOD, "can_hod_unlock"),
            (UnlockTierEnum.DEAN, "can_dean_unlock"),
        ):
            remaining = remaining_unlocks(lock, tier)
            status[key] = (
                lock.authorization_level.value == tier.value and remaining != 0
            )
    return status


def unlock_history(db: Session, lock_id: uuid.UUID) -> dict:
    lock = db.get(LockRecord, lock_id)
    if lock is None:
        raise LockNotFound(lock_id=lock_id)
    return {
        "lock": lock,
        "teacher": lock.history_for(UnlockTierEnum.TEACHER),
        "hod": lock.history_for(UnlockTierEnum.HOD),
        "dean": lock.history_for(UnlockTierEnum.DEAN),
        "admin": lock.history_for(UnlockTierEnum.ADMIN),
    }


def unlock_history_for_actor(
    db: Session,
    actor_id: uuid.UUID,
    tier: UnlockTierEnum,
    *,
    limit: int = 100,
) -> list[dict]:
    """Every unlock ``actor_id`` granted at ``tier``, newest first, across locks."""
    rows = (
        db.query(UnlockEvent, LockRecord)
        .join(LockRecord, UnlockEvent.lock_id == LockRecord.id)
        .filter(UnlockEvent.actor_id == actor_id, UnlockEvent.tier == tier)
        .order_by(UnlockEvent.unlocked_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "event": event,
            "lock_id": lock.id,
            "student_id": lock.student_id,
            "quiz_id": lock.quiz_id,
            "course_id": lock.course_id,
            "authorization_level": lock.authorization_level,
            "is_locked": lock.is_locked,
        }
        for event, lock in rows
    ]
