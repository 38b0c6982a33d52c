"""Security audit schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from quiz_engine.db.models import (
    SeverityEnum,
    ViolationActionEnum,
    ViolationTypeEnum,
)


class ViolationRead(BaseModel):
    id: uuid.UUID
    student_id: uuid.UUID
    course_id: uuid.UUID
    unit_id: uuid.UUID | None = None
    attempt_id: uuid.UUID
    violation_type: ViolationTypeEnum
    severity: SeverityEnum
    description: str
    details: dict[str, Any] = {}
    penalty_applied: float
    action: ViolationActionEnum
    is_resolved: bool
    resolved_by: uuid.UUID | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ResolveRequest(BaseModel):
    notes: str = Field("", max_length=2000)


class RiskAssessment(BaseModel):
    student_id: uuid.UUID
    risk_score: int
    risk_level: str
    total_violations: int
    by_severity: dict[str, int] = {}


class AttemptSecuritySummary(BaseModel):
    attempt_id: uuid.UUID
    total_violations: int
    by_type: dict[str, int] = {}
    by_severity: dict[str, int] = {}
    total_penalty: float
    highest_action: ViolationActionEnum | None = None


class HighRiskCourse(BaseModel):
    course_id: uuid.UUID
    violation_count: int
    high_severity_count: int
    unique_students: int
    risk_score: int
