"""Service-level tests for the attempt lifecycle."""

import uuid

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from quiz_engine.core.errors import (
    AlreadyPassed,
    AlreadySubmitted,
    AttemptLimitReached,
    Conflict,
    CooldownActive,
    InsufficientQuestions,
    NotEnrolled,
    QuizLocked,
    SourceNotFound,
    Unauthorized,
    VideosIncomplete,
)
from quiz_engine.db.models import (
    Attempt,
    AttemptModeEnum,
    AuditLog,
    FailureReasonEnum,
    RoleEnum,
    SecurityAuditRecord,
    UnlockTierEnum,
)
from quiz_engine.schemas.attempt import AnswerSubmit, SecuritySignals, ViolationEvent
from quiz_engine.services import locks
from quiz_engine.services.access import Actor
from quiz_engine.services.collaborators import TeacherScope


def _answers(attempt: Attempt, correct: int) -> list[AnswerSubmit]:
    """Answer the first ``correct`` questions right (option 0 is always right)."""
    return [
        AnswerSubmit(question_id=q["question_id"], selected_option=0 if i < correct else 1)
        for i, q in enumerate(attempt.questions)
    ]


def _take(service, student_id, source_id, correct: int, **kw):
    attempt = service.create_attempt(student_id, source_id)
    result = service.submit_attempt(attempt.id, student_id, _answers(attempt, correct), **kw)
    return attempt, result


# ── Creation gates ─────────────────────────────────────────────────────────────


class TestCreateAttempt:
    def test_snapshot_is_frozen_on_the_attempt(self, service, make_quiz, student):
        quiz = make_quiz(10, time_limit_minutes=20)
        attempt = service.create_attempt(student.id, quiz.id)

        assert len(attempt.questions) == 10
        assert attempt.max_score == 10
        assert attempt.quiz_id == quiz.id
        assert attempt.pool_id is None
        assert attempt.time_limit_minutes == 20
        assert attempt.passing_score == 70.0
        assert attempt.is_complete is False
        assert attempt.security_settings["fullscreen_required"] is True

    def test_pool_attempt_samples_questions(self, service, make_quiz, make_pool, student):
        pool = make_pool([make_quiz(10), make_quiz(10)], questions_per_attempt=8)
        attempt = service.create_attempt(student.id, pool.id, AttemptModeEnum.UNIT)
        assert attempt.pool_id == pool.id
        assert attempt.source_id == pool.id
        assert attempt.mode == AttemptModeEnum.UNIT
        assert len({q["question_id"] for q in attempt.questions}) == 8

    def test_audit_log_entry(self, db, service, make_quiz, student):
        attempt = service.create_attempt(student.id, make_quiz(5).id)
        log = db.query(AuditLog).filter(AuditLog.action == "attempt_created").one()
        assert log.details["attempt_id"] == str(attempt.id)
        assert log.details["question_count"] == 5

    def test_unknown_source(self, service, student):
        with pytest.raises(SourceNotFound):
            service.create_attempt(student.id, uuid.uuid4())

    def test_not_enrolled(self, service, make_quiz, student, platform, course_id):
        platform.not_enrolled.add((student.id, course_id))
        with pytest.raises(NotEnrolled):
            service.create_attempt(student.id, make_quiz(5).id)

    def test_unit_videos_required(self, service, make_quiz, student, platform):
        unit_id = uuid.uuid4()
        platform.videos_pending.add((student.id, unit_id))
        with pytest.raises(VideosIncomplete):
            service.create_attempt(student.id, make_quiz(5, unit_id=unit_id).id)

    def test_enrollment_is_checked_before_videos(self, service, make_quiz, student, platform, course_id):
        unit_id = uuid.uuid4()
        platform.not_enrolled.add((student.id, course_id))
        platform.videos_pending.add((student.id, unit_id))
        with pytest.raises(NotEnrolled):
            service.create_attempt(student.id, make_quiz(5, unit_id=unit_id).id)

    def test_already_passed(self, service, make_quiz, student, clock):
        quiz = make_quiz(10)
        _take(service, student.id, quiz.id, correct=10)
        clock.advance(hours=12)
        with pytest.raises(AlreadyPassed):
            service.create_attempt(student.id, quiz.id)

    def test_cooldown_reports_hours_left(self, service, make_quiz, student, clock):
        quiz = make_quiz(10)
        _take(service, student.id, quiz.id, correct=2)

        with pytest.raises(CooldownActive) as exc:
            service.create_attempt(student.id, quiz.id)
        assert exc.value.details["remaining_hours"] == 8

        clock.advance(hours=3, minutes=30)
        with pytest.raises(CooldownActive) as exc:
            service.create_attempt(student.id, quiz.id)
        assert exc.value.details["remaining_hours"] == 5
        assert exc.value.details["last_score"] == 20.0

    def test_limit_reached_after_cooldown(self, service, make_quiz, student, clock):
        quiz = make_quiz(10)
        _take(service, student.id, quiz.id, correct=2)
        clock.advance(hours=9)

        with pytest.raises(AttemptLimitReached) as exc:
            service.create_attempt(student.id, quiz.id)
        assert exc.value.details["attempts_taken"] == 1
        assert exc.value.details["attempt_limit"] == 1
        assert exc.value.details["lock"]["is_locked"] is True

    def test_extra_attempts_leave_the_lock_as_the_blocker(self, service, make_quiz, student, platform, clock):
        unit_id = uuid.uuid4()
        quiz = make_quiz(10, unit_id=unit_id)
        platform.extra_attempts[(student.id, unit_id)] = 1
        _take(service, student.id, quiz.id, correct=2)
        clock.advance(hours=9)

        with pytest.raises(QuizLocked) as exc:
            service.create_attempt(student.id, quiz.id)
        assert exc.value.details["reason"] == FailureReasonEnum.BELOW_PASSING_SCORE

    def test_unlock_grants_another_attempt(self, db, service, make_quiz, student, clock):
        quiz = make_quiz(10)
        _take(service, student.id, quiz.id, correct=2)
        clock.advance(hours=9)
        lock = locks.find_lock(db, student.id, quiz.id)
        locks.unlock(db, lock.id, tier=UnlockTierEnum.TEACHER, actor_id=uuid.uuid4(), reason="Retake")

        attempt = service.create_attempt(student.id, quiz.id)
        assert attempt.is_complete is False

    def test_second_open_attempt_conflicts(self, service, make_quiz, student):
        quiz = make_quiz(10)
        first = service.create_attempt(student.id, quiz.id)
        with pytest.raises(Conflict) as exc:
            service.create_attempt(student.id, quiz.id)
        assert exc.value.details["attempt_id"] == first.id

    def test_open_attempt_uniqueness_is_enforced_by_the_database(self, db, service, make_quiz, student):
        attempt = service.create_attempt(student.id, make_quiz(5).id)
        db.add(
            Attempt(
                student_id=student.id,
                course_id=attempt.course_id,
                source_id=attempt.source_id,
                questions=[],
                is_complete=False,
            )
        )
        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()

    def test_other_students_are_independent(self, service, make_quiz, student):
        quiz = make_quiz(5)
        service.create_attempt(student.id, quiz.id)
        assert service.create_attempt(uuid.uuid4(), quiz.id).is_complete is False

    def test_insufficient_questions(self, service, make_quiz, make_pool, student):
        pool = make_pool([make_quiz(2), make_quiz(2)], questions_per_attempt=5)
        with pytest.raises(InsufficientQuestions):
            service.create_attempt(student.id, pool.id)


class TestAvailability:
    def test_fresh_student(self, service, make_quiz, student):
        quiz = make_quiz(5)
        availability = service.check_availability(student.id, quiz.id)
        assert availability.available is True
        assert availability.remaining_attempts == 1
        assert availability.lock is None

    def test_after_failure(self, service, make_quiz, student):
        quiz = make_quiz(10)
        _take(service, student.id, quiz.id, correct=1)
        availability = service.check_availability(student.id, quiz.id)
        assert availability.available is False
        assert availability.blocked_by == "COOLDOWN_ACTIVE"
        assert availability.cooldown_remaining_hours == 8
        assert availability.remaining_attempts == 0
        assert availability.lock.is_locked is True

    def test_open_attempt_is_reported(self, service, make_quiz, student):
        quiz = make_quiz(5)
        attempt = service.create_attempt(student.id, quiz.id)
        assert service.check_availability(student.id, quiz.id).open_attempt_id == attempt.id


# ── Views ──────────────────────────────────────────────────────────────────────


class TestViews:
    def test_open_attempt_hides_answers_and_runs_timer(self, service, make_quiz, student, clock):
        attempt = service.create_attempt(student.id, make_quiz(5).id)
        view = service.get_attempt(attempt.id, student)
        assert view.remaining_seconds == 30 * 60
        assert "correct_option" not in view.questions[0].model_dump()

        clock.advance(minutes=10)
        assert service.get_attempt(attempt.id, student).remaining_seconds == 20 * 60
        clock.advance(hours=1)
        assert service.get_attempt(attempt.id, student).remaining_seconds == 0

    def test_viewers(self, service, make_quiz, student, platform, course_id):
        attempt = service.create_attempt(student.id, make_quiz(5).id)
        teacher = Actor(id=uuid.uuid4(), role=RoleEnum.TEACHER)
        platform.teacher_scopes[teacher.id] = TeacherScope(course_ids=frozenset({course_id}))

        assert service.get_attempt(attempt.id, teacher).id == attempt.id
        assert service.get_attempt(attempt.id, Actor(uuid.uuid4(), RoleEnum.ADMIN)).id == attempt.id
        with pytest.raises(Unauthorized):
            service.get_attempt(attempt.id, Actor(uuid.uuid4(), RoleEnum.STUDENT))
        with pytest.raises(Unauthorized):
            service.get_attempt(attempt.id, Actor(uuid.uuid4(), RoleEnum.TEACHER))

    def test_results_only_after_submission(self, service, make_quiz, student):
        attempt = service.create_attempt(student.id, make_quiz(4).id)
        with pytest.raises(Unauthorized):
            service.get_results(attempt.id, student)

        service.submit_attempt(attempt.id, student.id, _answers(attempt, 3))
        results = service.get_results(attempt.id, student)
        assert results.attempt.percentage == 75.0
        assert [q.is_correct for q in results.questions] == [True, True, True, False]
        assert all(q.correct_option == 0 for q in results.questions)
        assert results.questions[3].selected_option == 1

    def test_list_attempts(self, service, make_quiz, student, clock):
        first, second = make_quiz(5), make_quiz(5)
        _take(service, student.id, first.id, correct=5)
        clock.advance(minutes=5)
        service.create_attempt(student.id, second.id)

        assert len(service.list_attempts(student.id)) == 2
        only_first = service.list_attempts(student.id, first.id)
        assert [a.source_id for a in only_first] == [first.id]


# ── Submission ─────────────────────────────────────────────────────────────────


class TestSubmit:
    def test_passing_submission(self, db, service, make_quiz, student, notifier):
        unit_id = uuid.uuid4()
        attempt, result = _take(service, student.id, make_quiz(10, unit_id=unit_id).id, correct=9)

        assert result.passed is True
        assert result.percentage == 90.0
        assert result.quiz_locked is False
        assert notifier.passed == [(student.id, unit_id)]
        assert notifier.graded[0][0] == attempt.id
        assert notifier.graded[0][1]["passed"] is True

        db.refresh(attempt)
        assert attempt.is_complete is True
        assert attempt.is_submitted is True
        assert db.query(AuditLog).filter(AuditLog.action == "attempt_submitted").count() == 1

    def test_failing_submission_locks_quiz(self, db, service, make_quiz, student, notifier):
        quiz = make_quiz(10)
        _, result = _take(service, student.id, quiz.id, correct=6)

        assert result.passed is False
        assert result.quiz_locked is True
        assert result.lock_reason == FailureReasonEnum.BELOW_PASSING_SCORE
        assert notifier.passed == []
        lock = locks.find_lock(db, student.id, quiz.id)
        assert lock.is_locked is True
        assert lock.last_failure_score == 60.0

    def test_secure_mode_penalty(self, service, make_quiz, student):
        quiz = make_quiz(30)
        signals = SecuritySignals(tab_switch_count=4, auto_submitted=True)
        _, result = _take(service, student.id, quiz.id, correct=20, signals=signals)

        assert result.raw_percentage == 66.67
        assert result.penalty == 25
        assert result.percentage == 41.67
        assert result.penalty_breakdown == {"auto_submitted": 15.0, "tab_switches": 10.0}

    def test_security_lock_overrides_a_pass(self, db, service, make_quiz, student, notifier):
        quiz = make_quiz(10)
        signals = SecuritySignals(
            violations=[ViolationEvent(type="fullscreen-exit")] * 3,
            fullscreen_exits=3,
            auto_submitted=True,
        )
        _, result = _take(service, student.id, quiz.id, correct=10, signals=signals)

        # 100 - (15 auto-submit + 10 fullscreen exits)
        assert result.percentage == 75.0
        assert result.passed is True
        assert result.lock_reason == FailureReasonEnum.SECURITY_VIOLATION
        assert notifier.passed == [(student.id, None)]
        assert locks.find_lock(db, student.id, quiz.id).failure_reason == FailureReasonEnum.SECURITY_VIOLATION
        assert result.violations_recorded == 3

    def test_violations_are_recorded_with_request_metadata(self, db, service, make_quiz, student):
        signals = SecuritySignals(
            violations=[ViolationEvent(type="context-menu"), ViolationEvent(type="clipboard")],
        )
        _, result = _take(
            service, student.id, make_quiz(5).id, correct=5, signals=signals,
            user_agent="pytest-agent", ip_address="192.0.2.10",
        )
        assert result.violations_recorded == 2
        record = db.query(SecurityAuditRecord).first()
        assert record.details["user_agent"] == "pytest-agent"
        assert record.details["ip_address"] == "192.0.2.10"

    def test_unit_mode_penalty(self, service, make_quiz, student):
        quiz = make_quiz(10)
        attempt = service.create_attempt(student.id, quiz.id, AttemptModeEnum.UNIT)
        signals = SecuritySignals(violations=[ViolationEvent(type="tab-switch")] * 2, tab_switch_count=2)
        result = service.submit_attempt(attempt.id, student.id, _answers(attempt, 10), signals)
        assert result.penalty == 10
        assert result.percentage == 90.0

    def test_second_submission_is_rejected(self, service, make_quiz, student, notifier):
        attempt, first = _take(service, student.id, make_quiz(5).id, correct=5)
        with pytest.raises(AlreadySubmitted) as exc:
            service.submit_attempt(attempt.id, student.id, _answers(attempt, 0))
        assert exc.value.details["percentage"] == first.percentage
        assert len(notifier.graded) == 1

    def test_losing_a_concurrent_submission(self, db, service, make_quiz, student, notifier):
        attempt = service.create_attempt(student.id, make_quiz(5).id)
        answers = _answers(attempt, 5)
        # Another request completes the row behind this session's back.
        db.execute(
            update(Attempt)
            .where(Attempt.id == attempt.id)
            .values(is_complete=True)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(AlreadySubmitted):
            service.submit_attempt(attempt.id, student.id, answers)
        assert notifier.graded == []
        assert db.query(SecurityAuditRecord).count() == 0

    def test_only_the_owner_can_submit(self, service, make_quiz, student):
        attempt = service.create_attempt(student.id, make_quiz(5).id)
        with pytest.raises(Unauthorized):
            service.submit_attempt(attempt.id, uuid.uuid4(), _answers(attempt, 5))

    def test_submission_within_grace_is_on_time(self, service, make_quiz, student, clock):
        attempt = service.create_attempt(student.id, make_quiz(5).id)
        clock.advance(minutes=30, seconds=45)
        result = service.submit_attempt(attempt.id, student.id, _answers(attempt, 5))
        assert result.time_exceeded is False

    def test_late_failure_is_time_exceeded(self, db, service, make_quiz, student, clock):
        quiz = make_quiz(10)
        attempt = service.create_attempt(student.id, quiz.id)
        clock.advance(minutes=45)
        result = service.submit_attempt(attempt.id, student.id, _answers(attempt, 3))
        assert result.time_exceeded is True
        assert result.lock_reason == FailureReasonEnum.TIME_EXCEEDED

    def test_late_pass_is_flagged_but_kept(self, service, make_quiz, student, clock):
        attempt = service.create_attempt(student.id, make_quiz(10).id)
        clock.advance(minutes=45)
        result = service.submit_attempt(attempt.id, student.id, _answers(attempt, 10))
        assert result.time_exceeded is True
        assert result.passed is True
        assert result.quiz_locked is False


class TestExpireOverdue:
    def test_overdue_attempts_fail_as_time_exceeded(self, db, service, make_quiz, student, clock, notifier):
        quiz = make_quiz(5)
        attempt = service.create_attempt(student.id, quiz.id)
        service.create_attempt(uuid.uuid4(), quiz.id)
        clock.advance(minutes=20)
        late_start = service.create_attempt(uuid.uuid4(), make_quiz(5).id)
        clock.advance(minutes=15)

        assert service.expire_overdue() == 2
        assert len(notifier.graded) == 2
        assert notifier.passed == []
        db.refresh(attempt)
        db.refresh(late_start)
        assert attempt.is_complete is True
        assert attempt.is_submitted is False
        assert attempt.time_exceeded is True
        assert late_start.is_complete is False
        assert locks.find_lock(db, student.id, quiz.id).failure_reason == FailureReasonEnum.TIME_EXCEEDED
        assert db.query(AuditLog).filter(AuditLog.action == "attempt_expired").count() == 2

    def test_nothing_to_expire(self, service, make_quiz, student):
        service.create_attempt(student.id, make_quiz(5).id)
        assert service.expire_overdue() == 0
