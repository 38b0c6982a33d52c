"""Interfaces to the systems the engine depends on but does not own.

Enrollment, video progress and the teaching hierarchy are answered by the
course platform; lifecycle events are pushed back to it.  Services receive a
``Collaborators`` bundle so tests can swap in in-memory fakes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from quiz_engine.services.platform_client import PlatformClient, get_platform_client

logger = logging.getLogger(__name__)


# ── Consumed ──────────────────────────────────────────────────────────────────


class EnrollmentChecker(Protocol):
    def is_enrolled(self, student_id: uuid.UUID, course_id: uuid.UUID) -> bool: ...


class ProgressChecker(Protocol):
    def all_videos_watched(
        self, student_id: uuid.UUID, unit_id: uuid.UUID | None
    ) -> bool: ...

    def granted_extra_attempts(
        self, student_id: uuid.UUID, unit_id: uuid.UUID | None
    ) -> int: ...


@dataclass(frozen=True)
class TeacherScope:
    course_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)
    student_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)


class ScopeResolver(Protocol):
    def teacher_scope(self, teacher_id: uuid.UUID) -> TeacherScope: ...

    def department_course_ids(self, hod_id: uuid.UUID) -> set[uuid.UUID]: ...

    def school_course_ids(self, dean_id: uuid.UUID) -> set[uuid.UUID]: ...

    def teaches_course(self, teacher_id: uuid.UUID, course_id: uuid.UUID) -> bool: ...


# ── Emitted ───────────────────────────────────────────────────────────────────


class Notifier(Protocol):
    def on_quiz_passed(self, student_id: uuid.UUID, unit_id: uuid.UUID | None) -> None: ...

    def on_attempt_graded(self, attempt_id: uuid.UUID, summary: dict[str, Any]) -> None: ...


@dataclass
class Collaborators:
    enrollment: EnrollmentChecker
    progress: ProgressChecker
    scope: ScopeResolver
    notifier: Notifier


# ── Platform-backed implementation ────────────────────────────────────────────


def _uuids(values) -> set[uuid.UUID]:
    return {uuid.UUID(str(v)) for v in values}


class PlatformCollaborators:
    """Enrollment, progress and scope answered over HTTP by the platform."""

    def __init__(self, client: PlatformClient | None = None) -> None:
        self._client = client or get_platform_client()

    def is_enrolled(self, student_id: uuid.UUID, course_id: uuid.UUID) -> bool:
        return self._client.is_enrolled(student_id, course_id)

    def all_videos_watched(self, student_id: uuid.UUID, unit_id: uuid.UUID | None) -> bool:
        if unit_id is None:
            return True
        return bool(self._client.unit_progress(student_id, unit_id).get("all_videos_watched"))

    def granted_extra_attempts(self, student_id: uuid.UUID, unit_id: uuid.UUID | None) -> int:
        if unit_id is None:
            return 0
        extra = self._client.unit_progress(student_id, unit_id).get("extra_attempts", 0)
        return max(0, int(extra or 0))

    def teacher_scope(self, teacher_id: uuid.UUID) -> TeacherScope:
        data = self._client.teacher_scope(teacher_id)
        return TeacherScope(
            course_ids=frozenset(_uuids(data.get("course_ids", []))),
            student_ids=frozenset(_uuids(data.get("student_ids", []))),
        )

    def department_course_ids(self, hod_id: uuid.UUID) -> set[uuid.UUID]:
        return _uuids(self._client.department_courses(hod_id))

    def school_course_ids(self, dean_id: uuid.UUID) -> set[uuid.UUID]:
        return _uuids(self._client.school_courses(dean_id))

    def teaches_course(self, teacher_id: uuid.UUID, course_id: uuid.UUID) -> bool:
        return course_id in self.teacher_scope(teacher_id).course_ids


def build_collaborators(
    notifier: Notifier, client: PlatformClient | None = None
) -> Collaborators:
    platform = PlatformCollaborators(client)
    return Collaborators(
        enrollment=platform,
        progress=platform,
        scope=platform,
        notifier=notifier,
    )
