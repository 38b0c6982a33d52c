"""Background tasks executed by Celery workers."""

import logging
import uuid
from typing import Any

from quiz_engine.celery_app import celery_app
from quiz_engine.db.session import get_session_factory
from quiz_engine.services.attempts import AttemptService
from quiz_engine.services.collaborators import build_collaborators
from quiz_engine.services.platform_client import get_platform_client

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="deliver_platform_event", max_retries=3)
def deliver_platform_event(self, event: str, payload: dict) -> dict:
    """Push a lifecycle event (``quiz-passed``, ``attempt-graded``) to the platform."""
    try:
        result = get_platform_client().publish_event(event, payload)
        logger.info("Delivered %s event → %s", event, payload.get("attempt_id") or payload.get("student_id"))
        return {"success": True, "event": event, "result": result}
    except Exception as exc:
        logger.exception("Delivery of %s event failed", event)
        # Retry with exponential back-off (10s, 30s, 90s)
        raise self.retry(exc=exc, countdown=10 * (3**self.request.retries))


class CeleryNotifier:
    """Notifier that queues platform events instead of calling out inline."""

    def on_quiz_passed(self, student_id: uuid.UUID, unit_id: uuid.UUID | None) -> None:
        deliver_platform_event.delay(
            "quiz-passed",
            {"student_id": str(student_id), "unit_id": str(unit_id) if unit_id else None},
        )

    def on_attempt_graded(self, attempt_id: uuid.UUID, summary: dict[str, Any]) -> None:
        deliver_platform_event.delay(
            "attempt-graded", {"attempt_id": str(attempt_id), **summary}
        )


@celery_app.task(name="expire_overdue_attempts")
def expire_overdue_attempts() -> dict:
    """Finalize attempts left open past their time limit."""
    factory = get_session_factory()
    db = factory()
    try:
        service = AttemptService(db, build_collaborators(CeleryNotifier()))
        expired = service.expire_overdue()
        return {"success": True, "expired": expired}
    finally:
        db.close()
