"""Tests for the Celery tasks and the queued notifier."""

import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from quiz_engine import tasks
from quiz_engine.celery_app import celery_app
from quiz_engine.db.models import Attempt
from quiz_engine.schemas.attempt import AnswerSubmit, SecuritySignals
from quiz_engine.services.attempts import AttemptService
from quiz_engine.services.collaborators import Collaborators
from quiz_engine.services.platform_client import PlatformClient


class TestDeliverPlatformEvent:
    def test_delivers_payload(self, monkeypatch):
        client = MagicMock()
        client.publish_event.return_value = {"queued": True}
        monkeypatch.setattr(tasks, "get_platform_client", lambda: client)

        result = tasks.deliver_platform_event("quiz-passed", {"student_id": "s-1"})

        client.publish_event.assert_called_once_with("quiz-passed", {"student_id": "s-1"})
        assert result == {"success": True, "event": "quiz-passed", "result": {"queued": True}}

    def test_failure_is_raised_for_retry(self, monkeypatch):
        client = MagicMock()
        client.publish_event.side_effect = RuntimeError("platform down")
        monkeypatch.setattr(tasks, "get_platform_client", lambda: client)

        with pytest.raises(RuntimeError):
            tasks.deliver_platform_event("attempt-graded", {"attempt_id": "a-1"})


class TestCeleryNotifier:
    def test_events_are_queued(self, monkeypatch):
        delay = MagicMock()
        monkeypatch.setattr(tasks.deliver_platform_event, "delay", delay)
        student_id, attempt_id = uuid.uuid4(), uuid.uuid4()

        notifier = tasks.CeleryNotifier()
        notifier.on_quiz_passed(student_id, None)
        notifier.on_attempt_graded(attempt_id, {"passed": False})

        delay.assert_any_call("quiz-passed", {"student_id": str(student_id), "unit_id": None})
        delay.assert_any_call("attempt-graded", {"attempt_id": str(attempt_id), "passed": False})

    def test_platform_outage_does_not_fail_submission(
        self, db, platform, clock, make_quiz, student, monkeypatch
    ):
        calls = []

        def unavailable(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(503)

        client = PlatformClient("http://platform.test", transport=httpx.MockTransport(unavailable))
        monkeypatch.setattr(tasks, "get_platform_client", lambda: client)
        monkeypatch.setattr(celery_app.conf, "task_always_eager", True)
        monkeypatch.setattr(celery_app.conf, "task_eager_propagates", True)
        service = AttemptService(
            db,
            Collaborators(
                enrollment=platform, progress=platform, scope=platform,
                notifier=tasks.CeleryNotifier(),
            ),
            clock=clock,
        )
        attempt = service.create_attempt(student.id, make_quiz(5).id)

        result = service.submit_attempt(
            attempt.id,
            student.id,
            [AnswerSubmit(question_id=q["question_id"], selected_option=0) for q in attempt.questions],
            SecuritySignals(),
        )

        assert result.passed is True
        assert result.percentage == 100.0
        assert db.get(Attempt, attempt.id).is_complete is True
        assert calls[0] == "/events/attempt-graded"
        assert "/events/quiz-passed" in calls
        client.close()


class TestExpireOverdueTask:
    def test_sweeps_with_a_fresh_session(self, db, service, make_quiz, student, collaborators, monkeypatch):
        attempt = service.create_attempt(student.id, make_quiz(5).id)
        attempt.started_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
        db.commit()
        attempt_id = attempt.id

        monkeypatch.setattr(tasks, "get_session_factory", lambda: (lambda: db))
        monkeypatch.setattr(tasks, "build_collaborators", lambda notifier: collaborators)

        assert tasks.expire_overdue_attempts() == {"success": True, "expired": 1}
        assert db.get(Attempt, attempt_id).time_exceeded is True

    def test_beat_schedule_registers_the_sweep(self):
        entry = celery_app.conf.beat_schedule["expire-overdue-attempts"]
        assert entry["task"] == "expire_overdue_attempts"
