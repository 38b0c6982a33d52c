"""Attempt lifecycle: eligibility, creation, retrieval and submission.

Creation runs the eligibility gates in a fixed order and fails on the first
one that blocks:

  1. source exists           (SourceNotFound)
  2. student is enrolled     (NotEnrolled)
  3. unit videos watched     (VideosIncomplete, unit quizzes only)
  4. not already passed      (AlreadyPassed)
  5. retry cooldown elapsed  (CooldownActive)
  6. attempts left           (AttemptLimitReached)
  7. quiz not locked         (QuizLocked)

At most one open attempt per (student, source) is enforced by a partial
unique index, not by a read-then-write check.  Submission finalizes the
attempt with a compare-and-set on ``is_complete`` so only one submission can
ever win.
"""

from __future__ import annotations

import logging
import math
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from quiz_engine.config import settings
from quiz_engine.core.errors import (
    AlreadyPassed,
    AlreadySubmitted,
    AttemptLimitReached,
    AttemptNotFound,
    Conflict,
    CooldownActive,
    NotEnrolled,
    QuizEngineError,
    QuizLocked,
    Unauthorized,
    VideosIncomplete,
)
from quiz_engine.db.models import (
    Attempt,
    AttemptModeEnum,
    AuditLog,
    FailureReasonEnum,
    LockRecord,
    RoleEnum,
    as_utc,
)
from quiz_engine.schemas.attempt import (
    AnswerSubmit,
    AttemptResults,
    AttemptSummary,
    AttemptView,
    AvailabilityRead,
    LockInfo,
    QuestionRead,
    QuestionResult,
    SecuritySignals,
    SubmissionResult,
)
from quiz_engine.services import locks
from quiz_engine.services.access import Actor
from quiz_engine.services.collaborators import Collaborators
from quiz_engine.services.grading import GradeResult, grade_attempt
from quiz_engine.services.question_pool import (
    PoolSource,
    QuestionSnapshot,
    QuizSource,
    build_snapshot,
    resolve_source,
)
from quiz_engine.services.violations import record_violations

logger = logging.getLogger(__name__)

SECURITY_LOCK_TAB_SWITCHES = 3
SECURITY_LOCK_FULLSCREEN_EXITS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def security_settings_snapshot() -> dict:
    return {
        "fullscreen_required": settings.SECURE_FULLSCREEN_REQUIRED,
        "tab_switches_allowed": settings.SECURE_TAB_SWITCHES_ALLOWED,
        "tab_switch_grace_seconds": settings.SECURE_TAB_SWITCH_GRACE_SECONDS,
        "auto_submit_on_violation": settings.SECURE_AUTO_SUBMIT_ON_VIOLATION,
        "security_checks": ["fullscreen", "tab_switch", "keyboard_shortcuts"],
    }


def is_security_lock(signals: SecuritySignals) -> bool:
    """An auto-submit caused by repeated tab switching or fullscreen exits."""
    return signals.auto_submitted and (
        signals.tab_switch_count >= SECURITY_LOCK_TAB_SWITCHES
        or signals.fullscreen_exits >= SECURITY_LOCK_FULLSCREEN_EXITS
    )


def _lock_info(lock: LockRecord | None) -> dict | None:
    if lock is None:
        return None
    return {
        "is_locked": lock.is_locked,
        "failure_reason": lock.failure_reason,
        "authorization_level": lock.authorization_level,
        "total_unlocks": lock.total_unlocks,
    }


class AttemptService:
    """Attempt operations bound to one DB session and one set of collaborators."""

    def __init__(
        self,
        db: Session,
        collaborators: Collaborators,
        *,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.db = db
        self.collab = collaborators
        self._clock = clock or _utcnow
        self._rng = rng

    # ── queries ───────────────────────────────────────────────────────────

    def _completed(self, student_id: uuid.UUID, source_id: uuid.UUID):
        return self.db.query(Attempt).filter(
            Attempt.student_id == student_id,
            Attempt.source_id == source_id,
            Attempt.is_complete.is_(True),
        )

    def _passed_attempt(self, student_id, source_id) -> Attempt | None:
        return self._completed(student_id, source_id).filter(Attempt.passed.is_(True)).first()

    def _last_failed(self, student_id, source_id) -> Attempt | None:
        return (
            self._completed(student_id, source_id)
            .filter(Attempt.passed.is_(False))
            .order_by(Attempt.completed_at.desc())
            .first()
        )

    def _open_attempt(self, student_id, source_id) -> Attempt | None:
        return (
            self.db.query(Attempt)
            .filter(
                Attempt.student_id == student_id,
                Attempt.source_id == source_id,
                Attempt.is_complete.is_(False),
            )
            .first()
        )

    def _cooldown_remaining_hours(self, last_failed: Attempt | None, now: datetime) -> int:
        if last_failed is None or last_failed.completed_at is None:
            return 0
        elapsed = now - as_utc(last_failed.completed_at)
        remaining = timedelta(hours=settings.RETRY_COOLDOWN_HOURS) - elapsed
        if remaining <= timedelta(0):
            return 0
        return math.ceil(remaining.total_seconds() / 3600)

    def _attempt_limit(self, student_id, unit_id, lock: LockRecord | None) -> int:
        extra = self.collab.progress.granted_extra_attempts(student_id, unit_id)
        unlocks = lock.total_unlocks if lock is not None else 0
        return settings.BASE_ATTEMPT_LIMIT + max(0, extra) + unlocks

    def _load(self, attempt_id: uuid.UUID) -> Attempt:
        attempt = self.db.get(Attempt, attempt_id)
        if attempt is None:
            raise AttemptNotFound(attempt_id=attempt_id)
        return attempt

    @staticmethod
    def ends_at(attempt: Attempt) -> datetime:
        return as_utc(attempt.started_at) + timedelta(minutes=attempt.time_limit_minutes)

    # ── create ────────────────────────────────────────────────────────────

    def _check_eligibility(self, student_id: uuid.UUID, source: QuizSource, now: datetime) -> None:
        if not self.collab.enrollment.is_enrolled(student_id, source.course_id):
            raise NotEnrolled(course_id=source.course_id)

        if source.unit_id is not None and not self.collab.progress.all_videos_watched(
            student_id, source.unit_id
        ):
            raise VideosIncomplete(unit_id=source.unit_id)

        passed = self._passed_attempt(student_id, source.id)
        if passed is not None:
            raise AlreadyPassed(attempt_id=passed.id, percentage=passed.percentage)

        last_failed = self._last_failed(student_id, source.id)
        hours = self._cooldown_remaining_hours(last_failed, now)
        if hours:
            raise CooldownActive(
                f"You can retry this quiz in {hours} hour(s)",
                remaining_hours=hours,
                last_score=last_failed.percentage,
                attempt_id=last_failed.id,
            )

        lock = locks.find_lock(self.db, student_id, source.id)
        limit = self._attempt_limit(student_id, source.unit_id, lock)
        taken = self._completed(student_id, source.id).count()
        if taken >= limit:
            raise AttemptLimitReached(
                attempts_taken=taken, attempt_limit=limit, lock=_lock_info(lock)
            )

        if lock is not None and lock.is_locked:
            raise QuizLocked(
                lock_id=lock.id,
                reason=lock.failure_reason,
                authorization_level=lock.authorization_level,
            )

    def create_attempt(
        self,
        student_id: uuid.UUID,
        source_id: uuid.UUID,
        mode: AttemptModeEnum = AttemptModeEnum.SECURE,
    ) -> Attempt:
        source = resolve_source(self.db, source_id)
        now = self._clock()
        self._check_eligibility(student_id, source, now)

        snapshot = build_snapshot(source, self._rng)
        attempt = Attempt(
            student_id=student_id,
            course_id=source.course_id,
            unit_id=source.unit_id,
            quiz_id=None if isinstance(source, PoolSource) else source.id,
            pool_id=source.id if isinstance(source, PoolSource) else None,
            source_id=source.id,
            mode=mode,
            questions=[q.to_dict() for q in snapshot],
            max_score=round(sum(q.points for q in snapshot), 2),
            passing_score=source.passing_score,
            time_limit_minutes=source.time_limit_minutes,
            security_settings=security_settings_snapshot(),
            started_at=now,
            is_complete=False,
            is_submitted=False,
        )
        self.db.add(attempt)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = self._open_attempt(student_id, source.id)
            logger.info(
                "Student %s already has an open attempt for %s", student_id, source.id
            )
            raise Conflict(
                "An attempt for this quiz is already in progress",
                attempt_id=existing.id if existing else None,
            )

        self.db.add(
            AuditLog(
                action="attempt_created",
                performed_by=student_id,
                details={
                    "attempt_id": str(attempt.id),
                    "source_id": str(source.id),
                    "mode": mode.value,
                    "question_count": len(snapshot),
                },
            )
        )
        self.db.commit()
        self.db.refresh(attempt)
        logger.info(
            "Attempt %s created for student %s on %s (%d questions, %s mode)",
            attempt.id, student_id, source.id, len(snapshot), mode.value,
        )
        return attempt

    def check_availability(self, student_id: uuid.UUID, source_id: uuid.UUID) -> AvailabilityRead:
        """Non-raising view of the creation gates."""
        source = resolve_source(self.db, source_id)
        now = self._clock()
        lock = locks.find_lock(self.db, student_id, source.id)
        limit = self._attempt_limit(student_id, source.unit_id, lock)
        taken = self._completed(student_id, source.id).count()
        open_attempt = self._open_attempt(student_id, source.id)

        blocked_by = None
        try:
            self._check_eligibility(student_id, source, now)
        except QuizEngineError as exc:
            blocked_by = exc.code.value

        return AvailabilityRead(
            source_id=source.id,
            available=blocked_by is None,
            blocked_by=blocked_by,
            passed=self._passed_attempt(student_id, source.id) is not None,
            all_videos_watched=self.collab.progress.all_videos_watched(student_id, source.unit_id),
            attempts_taken=taken,
            attempt_limit=limit,
            remaining_attempts=max(0, limit - taken),
            cooldown_remaining_hours=self._cooldown_remaining_hours(
                self._last_failed(student_id, source.id), now
            ) or None,
            open_attempt_id=open_attempt.id if open_attempt else None,
            lock=LockInfo(**_lock_info(lock)) if lock is not None else None,
        )

    # ── read ──────────────────────────────────────────────────────────────

    def _authorize_view(self, attempt: Attempt, requester: Actor) -> None:
        if requester.role == RoleEnum.ADMIN or requester.id == attempt.student_id:
            return
        if requester.role == RoleEnum.TEACHER and self.collab.scope.teaches_course(
            requester.id, attempt.course_id
        ):
            return
        raise Unauthorized(attempt_id=attempt.id)

    def get_attempt(self, attempt_id: uuid.UUID, requester: Actor) -> AttemptView:
        attempt = self._load(attempt_id)
        self._authorize_view(attempt, requester)

        ends_at = self.ends_at(attempt)
        remaining = 0
        if not attempt.is_complete:
            remaining = max(0, math.ceil((ends_at - self._clock()).total_seconds()))

        return AttemptView(
            id=attempt.id,
            student_id=attempt.student_id,
            source_id=attempt.source_id,
            course_id=attempt.course_id,
            unit_id=attempt.unit_id,
            mode=attempt.mode,
            questions=[
                QuestionRead(
                    question_id=q["question_id"],
                    text=q["text"],
                    options=q["options"],
                    points=q.get("points", 1.0),
                )
                for q in attempt.questions
            ],
            time_limit_minutes=attempt.time_limit_minutes,
            passing_score=attempt.passing_score,
            security_settings=attempt.security_settings or {},
            started_at=as_utc(attempt.started_at),
            ends_at=ends_at,
            remaining_seconds=remaining,
            is_complete=attempt.is_complete,
        )

    def get_results(self, attempt_id: uuid.UUID, requester: Actor) -> AttemptResults:
        """Graded attempt with the answer key; only once it is complete."""
        attempt = self._load(attempt_id)
        self._authorize_view(attempt, requester)
        if not attempt.is_complete:
            raise Unauthorized("Results are available after submission", attempt_id=attempt.id)

        graded = {a["question_id"]: a for a in (attempt.answers or [])}
        questions = []
        for q in attempt.questions:
            answer = graded.get(q["question_id"], {})
            questions.append(
                QuestionResult(
                    question_id=q["question_id"],
                    text=q["text"],
                    options=q["options"],
                    correct_option=q["correct_option"],
                    selected_option=answer.get("selected_option"),
                    is_correct=bool(answer.get("is_correct", False)),
                    points=q.get("points", 1.0),
                    points_earned=answer.get("points_earned", 0.0),
                )
            )
        return AttemptResults(
            attempt=AttemptSummary.model_validate(attempt), questions=questions
        )

    def list_attempts(
        self, student_id: uuid.UUID, source_id: uuid.UUID | None = None
    ) -> list[Attempt]:
        query = self.db.query(Attempt).filter(Attempt.student_id == student_id)
        if source_id is not None:
            query = query.filter(Attempt.source_id == source_id)
        return query.order_by(Attempt.started_at.desc()).all()

    # ── submit ────────────────────────────────────────────────────────────

    def submit_attempt(
        self,
        attempt_id: uuid.UUID,
        student_id: uuid.UUID,
        answers: Iterable[AnswerSubmit],
        signals: SecuritySignals | None = None,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> SubmissionResult:
        attempt = self._load(attempt_id)
        if attempt.student_id != student_id:
            raise Unauthorized(attempt_id=attempt_id)
        if attempt.is_complete:
            raise AlreadySubmitted(
                attempt_id=attempt.id,
                percentage=attempt.percentage,
                passed=attempt.passed,
            )

        signals = signals or SecuritySignals()
        now = self._clock()
        grace = timedelta(seconds=settings.LATE_SUBMISSION_GRACE_SECONDS)
        time_exceeded = now > self.ends_at(attempt) + grace

        snapshot = [QuestionSnapshot.from_dict(q) for q in attempt.questions]
        result = grade_attempt(
            snapshot,
            list(answers),
            signals,
            mode=attempt.mode,
            passing_score=attempt.passing_score,
        )
        return self._finalize(
            attempt,
            result,
            signals,
            now=now,
            time_exceeded=time_exceeded,
            submitted=True,
            performed_by=student_id,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def _claim(self, attempt_id: uuid.UUID, values: dict) -> bool:
        """Compare-and-set: complete the attempt only if nobody else did."""
        stmt = (
            update(Attempt)
            .where(Attempt.id == attempt_id, Attempt.is_complete.is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def _notify(self, hook: str, *args) -> None:
        # The grade is already committed; a delivery failure must not surface
        try:
            getattr(self.collab.notifier, hook)(*args)
        except Exception:
            logger.exception("Notifier %s failed for %s", hook, args[0])

    def _finalize(
        self,
        attempt: Attempt,
        result: GradeResult,
        signals: SecuritySignals,
        *,
        now: datetime,
        time_exceeded: bool,
        submitted: bool,
        performed_by: uuid.UUID | None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> SubmissionResult:
        security_lock = is_security_lock(signals)
        values = {
            "answers": [a.to_dict() for a in result.answers],
            "score": result.final_score,
            "max_score": result.max_score,
            "percentage": result.final_percentage,
            "raw_score": result.raw_score,
            "raw_percentage": result.raw_percentage,
            "penalty": result.penalty,
            "passed": result.passed,
            "completed_at": now,
            "is_complete": True,
            "is_submitted": submitted,
            "auto_submitted": signals.auto_submitted,
            "time_exceeded": time_exceeded,
            "security_data": {
                "violations": [v.model_dump(mode="json") for v in signals.violations],
                "tab_switch_count": signals.tab_switch_count,
                "fullscreen_exits": signals.fullscreen_exits,
                "blocked_shortcut_count": signals.blocked_shortcut_count,
                "window_minimize_count": signals.window_minimize_count,
                "auto_submitted": signals.auto_submitted,
                "penalty_applied": result.penalty,
                "penalty_breakdown": result.penalty_breakdown,
                "original_score": result.raw_score,
                "original_percentage": result.raw_percentage,
            },
        }
        if not self._claim(attempt.id, values):
            self.db.rollback()
            logger.info("Attempt %s was already finalized by another request", attempt.id)
            raise AlreadySubmitted(attempt_id=attempt.id)

        records = record_violations(
            self.db,
            attempt,
            signals,
            penalty=result.penalty,
            security_lock=security_lock,
            now=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )

        lock_reason = None
        if security_lock:
            lock_reason = FailureReasonEnum.SECURITY_VIOLATION
        elif not result.passed:
            lock_reason = (
                FailureReasonEnum.TIME_EXCEEDED
                if time_exceeded
                else FailureReasonEnum.BELOW_PASSING_SCORE
            )

        try:
            if lock_reason is not None:
                locks.register_failure(
                    self.db,
                    student_id=attempt.student_id,
                    quiz_id=attempt.source_id,
                    course_id=attempt.course_id,
                    reason=lock_reason,
                    score=result.final_percentage,
                    passing_score=attempt.passing_score,
                    now=now,
                )
            else:
                locks.register_pass(
                    self.db,
                    student_id=attempt.student_id,
                    quiz_id=attempt.source_id,
                    score=result.final_percentage,
                    now=now,
                )
            self.db.add(
                AuditLog(
                    action="attempt_submitted" if submitted else "attempt_expired",
                    performed_by=performed_by,
                    details={
                        "attempt_id": str(attempt.id),
                        "percentage": result.final_percentage,
                        "passed": result.passed,
                        "penalty": result.penalty,
                        "lock_reason": lock_reason.value if lock_reason else None,
                    },
                )
            )
            self.db.commit()
        except (StaleDataError, IntegrityError):
            self.db.rollback()
            logger.warning("Concurrent lock update while finalizing attempt %s", attempt.id)
            raise Conflict(
                "Quiz lock was modified concurrently, please resubmit",
                attempt_id=attempt.id,
            )

        self.db.refresh(attempt)
        logger.info(
            "Attempt %s graded: %.2f%% (raw %.2f%%, penalty %.1f) passed=%s",
            attempt.id, result.final_percentage, result.raw_percentage,
            result.penalty, result.passed,
        )

        summary = {
            "student_id": str(attempt.student_id),
            "source_id": str(attempt.source_id),
            "percentage": result.final_percentage,
            "passed": result.passed,
            "quiz_locked": lock_reason is not None,
        }
        self._notify("on_attempt_graded", attempt.id, summary)
        if result.passed:
            self._notify("on_quiz_passed", attempt.student_id, attempt.unit_id)

        return SubmissionResult(
            attempt_id=attempt.id,
            score=result.final_score,
            max_score=result.max_score,
            percentage=result.final_percentage,
            raw_score=result.raw_score,
            raw_percentage=result.raw_percentage,
            penalty=result.penalty,
            penalty_breakdown=result.penalty_breakdown,
            passed=result.passed,
            passing_score=attempt.passing_score,
            time_exceeded=time_exceeded,
            violations_recorded=len(records),
            quiz_locked=lock_reason is not None,
            lock_reason=lock_reason,
            completed_at=now,
        )

    # ── sweep ─────────────────────────────────────────────────────────────

    def expire_overdue(self) -> int:
        """Finalize open attempts whose time limit plus grace has passed.

        They are graded with no answers and count as a TIME_EXCEEDED failure.
        """
        now = self._clock()
        grace = timedelta(seconds=settings.LATE_SUBMISSION_GRACE_SECONDS)
        open_attempts = self.db.query(Attempt).filter(Attempt.is_complete.is_(False)).all()

        expired = 0
        for attempt in open_attempts:
            if now <= self.ends_at(attempt) + grace:
                continue
            snapshot = [QuestionSnapshot.from_dict(q) for q in attempt.questions]
            signals = SecuritySignals()
            result = grade_attempt(
                snapshot, [], signals, mode=attempt.mode, passing_score=attempt.passing_score
            )
            try:
                self._finalize(
                    attempt,
                    result,
                    signals,
                    now=now,
                    time_exceeded=True,
                    submitted=False,
                    performed_by=None,
                )
            except (AlreadySubmitted, Conflict):
                # Submitted while we were sweeping.
                continue
            expired += 1

        if expired:
            logger.info("Expired %d overdue attempt(s)", expired)
        return expired
