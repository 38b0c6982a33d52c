"""HTTP client for the course platform micro-service (singleton).

The platform owns users, enrollments, video progress and the teaching
hierarchy.  The engine asks it yes/no questions and pushes lifecycle events.
"""

import logging
import uuid
from typing import Any

import httpx

from quiz_engine.config import settings

logger = logging.getLogger(__name__)


class PlatformClient:
    """Thin wrapper around the course platform HTTP API."""

    def __init__(
        self,
        base_url: str = settings.PLATFORM_SERVICE_URL,
        *,
        timeout: float = settings.PLATFORM_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._http = httpx.Client(base_url=self._base, timeout=timeout, transport=transport)

    # ── health ────────────────────────────────────────────────────────────

    def healthy(self) -> bool:
        try:
            return self._http.get("/health").status_code == 200
        except httpx.HTTPError:
            return False

    # ── enrollment & progress ─────────────────────────────────────────────

    def is_enrolled(self, student_id: uuid.UUID, course_id: uuid.UUID) -> bool:
        r = self._http.get(f"/courses/{course_id}/students/{student_id}/enrollment")
        if r.status_code == 404:
            return False
        r.raise_for_status()
        return bool(r.json().get("enrolled", False))

    def unit_progress(self, student_id: uuid.UUID, unit_id: uuid.UUID) -> dict[str, Any]:
        """``{"all_videos_watched": bool, "extra_attempts": int}``"""
        r = self._http.get(f"/units/{unit_id}/students/{student_id}/progress")
        r.raise_for_status()
        return r.json()

    # ── teaching hierarchy ────────────────────────────────────────────────

    def teacher_scope(self, teacher_id: uuid.UUID) -> dict[str, list[str]]:
        """Courses and students of every section the teacher is assigned to."""
        r = self._http.get(f"/teachers/{teacher_id}/sections/scope")
        r.raise_for_status()
        return r.json()

    def department_courses(self, hod_id: uuid.UUID) -> list[str]:
        r = self._http.get(f"/hods/{hod_id}/department/courses")
        r.raise_for_status()
        return r.json().get("course_ids", [])

    def school_courses(self, dean_id: uuid.UUID) -> list[str]:
        r = self._http.get(f"/deans/{dean_id}/school/courses")
        r.raise_for_status()
        return r.json().get("course_ids", [])

    # ── events ────────────────────────────────────────────────────────────

    def publish_event(self, event: str, payload: dict[str, Any]) -> dict[str, Any]:
        r = self._http.post(f"/events/{event}", json=payload)
        r.raise_for_status()
        return r.json() if r.content else {}

    def close(self) -> None:
        self._http.close()


_instance: PlatformClient | None = None


def get_platform_client() -> PlatformClient:
    global _instance
    if _instance is None:
        _instance = PlatformClient()
        logger.info("Platform client initialised → %s", _instance._base)
    return _instance
