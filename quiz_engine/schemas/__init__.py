"""Pydantic schemas — re‑exported for convenience."""

from quiz_engine.schemas.common import ErrorResponse  # noqa: F401
from quiz_engine.schemas.attempt import (  # noqa: F401
    AttemptCreate,
    AttemptSubmit,
    AttemptView,
    AttemptSummary,
    AttemptResults,
    AvailabilityRead,
    SecuritySignals,
    SubmissionResult,
    ViolationEvent,
)
from quiz_engine.schemas.lock import (  # noqa: F401
    ActorUnlockRead,
    LockRead,
    LockStatus,
    UnlockHistory,
    UnlockRequest,
    UnlockResult,
)
from quiz_engine.schemas.security import (  # noqa: F401
    AttemptSecuritySummary,
    HighRiskCourse,
    RiskAssessment,
    ViolationRead,
)
