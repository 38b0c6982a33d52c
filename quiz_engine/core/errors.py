"""Domain error taxonomy.

Every error the engine raises on purpose is a ``QuizEngineError`` carrying a
stable ``ErrorCode`` tag, an HTTP status and a ``details`` dict that clients
can render (remaining cooldown hours, the existing attempt id, the tier
required to unlock, ...).  ``main.py`` turns them into ``ErrorResponse``
envelopes.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorCode(str, enum.Enum):
    SOURCE_NOT_FOUND = "SOURCE_NOT_FOUND"
    ATTEMPT_NOT_FOUND = "ATTEMPT_NOT_FOUND"
    LOCK_NOT_FOUND = "LOCK_NOT_FOUND"
    VIOLATION_NOT_FOUND = "VIOLATION_NOT_FOUND"
    NOT_ENROLLED = "NOT_ENROLLED"
    VIDEOS_INCOMPLETE = "VIDEOS_INCOMPLETE"
    ALREADY_PASSED = "ALREADY_PASSED"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    ATTEMPT_LIMIT_REACHED = "ATTEMPT_LIMIT_REACHED"
    QUIZ_LOCKED = "QUIZ_LOCKED"
    INSUFFICIENT_QUESTIONS = "INSUFFICIENT_QUESTIONS"
    ALREADY_SUBMITTED = "ALREADY_SUBMITTED"
    UNAUTHORIZED = "UNAUTHORIZED"
    TIER_LIMIT_EXCEEDED = "TIER_LIMIT_EXCEEDED"
    NOT_LOCKED = "NOT_LOCKED"
    CONFLICT = "CONFLICT"


class QuizEngineError(Exception):
    """Base class for expected, client-visible failures."""

    code: ErrorCode = ErrorCode.CONFLICT
    status_code: int = 400
    default_message: str = "Request could not be completed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details: dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error_code": self.code.value,
            "message": self.message,
            "details": _jsonable(self.details) or None,
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, enum.Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


# ── Not found ─────────────────────────────────────────────────────────────────


class SourceNotFound(QuizEngineError):
    code = ErrorCode.SOURCE_NOT_FOUND
    status_code = 404
    default_message = "Quiz or quiz pool not found"


class AttemptNotFound(QuizEngineError):
    code = ErrorCode.ATTEMPT_NOT_FOUND
    status_code = 404
    default_message = "Attempt not found"


class LockNotFound(QuizEngineError):
    code = ErrorCode.LOCK_NOT_FOUND
    status_code = 404
    default_message = "Quiz lock not found"


class ViolationNotFound(QuizEngineError):
    code = ErrorCode.VIOLATION_NOT_FOUND
    status_code = 404
    default_message = "Security violation not found"


# ── Attempt gates ─────────────────────────────────────────────────────────────


class NotEnrolled(QuizEngineError):
    code = ErrorCode.NOT_ENROLLED
    status_code = 403
    default_message = "You are not enrolled in this course"


class VideosIncomplete(QuizEngineError):
    code = ErrorCode.VIDEOS_INCOMPLETE
    status_code = 403
    default_message = "Watch all unit videos before taking this quiz"


class AlreadyPassed(QuizEngineError):
    code = ErrorCode.ALREADY_PASSED
    status_code = 409
    default_message = "You have already passed this quiz"


class CooldownActive(QuizEngineError):
    code = ErrorCode.COOLDOWN_ACTIVE
    status_code = 403
    default_message = "Retry cooldown is still active"


class AttemptLimitReached(QuizEngineError):
    code = ErrorCode.ATTEMPT_LIMIT_REACHED
    status_code = 403
    default_message = "Maximum number of attempts reached"


class QuizLocked(QuizEngineError):
    code = ErrorCode.QUIZ_LOCKED
    status_code = 423
    default_message = "Quiz is locked until an authorized unlock"


class InsufficientQuestions(QuizEngineError):
    code = ErrorCode.INSUFFICIENT_QUESTIONS
    status_code = 422
    default_message = "Not enough questions available for this quiz"


# ── Submission / authorization ────────────────────────────────────────────────


class AlreadySubmitted(QuizEngineError):
    code = ErrorCode.ALREADY_SUBMITTED
    status_code = 409
    default_message = "Attempt has already been submitted"


class Unauthorized(QuizEngineError):
    code = ErrorCode.UNAUTHORIZED
    status_code = 403
    default_message = "Not allowed to access this resource"


class TierLimitExceeded(QuizEngineError):
    code = ErrorCode.TIER_LIMIT_EXCEEDED
    status_code = 403
    default_message = "Unlock requires a higher authorization level"


class NotLocked(QuizEngineError):
    code = ErrorCode.NOT_LOCKED
    status_code = 409
    default_message = "Quiz is not currently locked"


class Conflict(QuizEngineError):
    code = ErrorCode.CONFLICT
    status_code = 409
    default_message = "Concurrent update detected, please retry"
