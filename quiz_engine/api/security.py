"""Security audit routes: violations, risk scores, resolutions."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from quiz_engine.api.deps import (
    get_collaborators,
    get_current_actor,
    require_admin,
    require_staff,
)
from quiz_engine.core.errors import AttemptNotFound, Unauthorized
from quiz_engine.db.models import Attempt, RoleEnum
from quiz_engine.db.session import get_db
from quiz_engine.schemas.security import (
    AttemptSecuritySummary,
    HighRiskCourse,
    ResolveRequest,
    RiskAssessment,
    ViolationRead,
)
from quiz_engine.services import violations
from quiz_engine.services.access import Actor, authorize_student_view
from quiz_engine.services.collaborators import Collaborators

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/students/{student_id}/risk", response_model=RiskAssessment)
def student_risk(
    student_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    collaborators: Collaborators = Depends(get_collaborators),
    db: Session = Depends(get_db),
):
    authorize_student_view(db, actor, student_id, collaborators.scope)
    return violations.student_risk(db, student_id)


@router.get("/students/{student_id}/violations", response_model=list[ViolationRead])
def student_violations(
    student_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    collaborators: Collaborators = Depends(get_collaborators),
    db: Session = Depends(get_db),
):
    authorize_student_view(db, actor, student_id, collaborators.scope)
    return violations.list_student_violations(db, student_id, limit=limit)


@router.get("/attempts/{attempt_id}", response_model=AttemptSecuritySummary)
def attempt_security_summary(
    attempt_id: uuid.UUID,
    actor: Actor = Depends(require_staff),
    collaborators: Collaborators = Depends(get_collaborators),
    db: Session = Depends(get_db),
):
    attempt = db.get(Attempt, attempt_id)
    if attempt is None:
        raise AttemptNotFound(attempt_id=attempt_id)
    if actor.role == RoleEnum.TEACHER and not collaborators.scope.teaches_course(
        actor.id, attempt.course_id
    ):
        raise Unauthorized(attempt_id=attempt_id)
    return violations.attempt_summary(db, attempt_id)


@router.patch("/violations/{violation_id}/resolve", response_model=ViolationRead)
def resolve_violation(
    violation_id: uuid.UUID,
    body: ResolveRequest,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return violations.resolve_violation(db, violation_id, actor.id, body.notes)


@router.get("/courses/high-risk", response_model=list[HighRiskCourse])
def high_risk_courses(
    limit: int = Query(20, ge=1, le=100),
    _admin: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return violations.high_risk_courses(db, limit=limit)
