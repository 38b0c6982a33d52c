"""Who may see and unlock which locks."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import or_
from sqlalchemy.orm import Session

from quiz_engine.core.errors import Unauthorized
from quiz_engine.db.models import (
    Attempt,
    AuthorizationLevelEnum,
    LockRecord,
    RoleEnum,
    UnlockTierEnum,
)
from quiz_engine.services.collaborators import ScopeResolver

logger = logging.getLogger(__name__)

_TIER_FOR_ROLE = {
    RoleEnum.TEACHER: UnlockTierEnum.TEACHER,
    RoleEnum.HOD: UnlockTierEnum.HOD,
    RoleEnum.DEAN: UnlockTierEnum.DEAN,
    RoleEnum.ADMIN: UnlockTierEnum.ADMIN,
}


@dataclass(frozen=True)
class Actor:
    id: uuid.UUID
    role: RoleEnum

    @property
    def is_admin(self) -> bool:
        return self.role == RoleEnum.ADMIN


def unlock_tier_for(actor: Actor) -> UnlockTierEnum:
    tier = _TIER_FOR_ROLE.get(actor.role)
    if tier is None:
        raise Unauthorized("Your role cannot unlock quizzes", role=actor.role)
    return tier


def list_locked_for(
    db: Session, actor: Actor, scope: ScopeResolver
) -> list[LockRecord]:
    """Locked records the actor is responsible for at their tier."""
    query = db.query(LockRecord).filter(LockRecord.is_locked.is_(True))

    if actor.role == RoleEnum.ADMIN:
        pass
    elif actor.role == RoleEnum.TEACHER:
        sections = scope.teacher_scope(actor.id)
        if not sections.course_ids and not sections.student_ids:
            return []
        query = query.filter(
            LockRecord.authorization_level == AuthorizationLevelEnum.TEACHER,
            or_(
                LockRecord.course_id.in_(list(sections.course_ids)),
                LockRecord.student_id.in_(list(sections.student_ids)),
            ),
        )
    elif actor.role == RoleEnum.HOD:
        courses = scope.department_course_ids(actor.id)
        if not courses:
            return []
        query = query.filter(
            LockRecord.authorization_level == AuthorizationLevelEnum.HOD,
            LockRecord.course_id.in_(list(courses)),
        )
    elif actor.role == RoleEnum.DEAN:
        courses = scope.school_course_ids(actor.id)
        if not courses:
            return []
        query = query.filter(
            LockRecord.authorization_level == AuthorizationLevelEnum.DEAN,
            LockRecord.course_id.in_(list(courses)),
        )
    else:
        raise Unauthorized("Your role cannot view locked quizzes", role=actor.role)

    return query.order_by(LockRecord.lock_timestamp.desc()).all()


def can_act_on(actor: Actor, lock: LockRecord, scope: ScopeResolver) -> bool:
    """Scope check only; tier / cap rules live in the lock state machine."""
    if actor.role == RoleEnum.ADMIN:
        return True
    if actor.role == RoleEnum.TEACHER:
        sections = scope.teacher_scope(actor.id)
        return lock.course_id in sections.course_ids or lock.student_id in sections.student_ids
    if actor.role == RoleEnum.HOD:
        return lock.course_id in scope.department_course_ids(actor.id)
    if actor.role == RoleEnum.DEAN:
        return lock.course_id in scope.school_course_ids(actor.id)
    return False


def authorize_unlock(actor: Actor, lock: LockRecord, scope: ScopeResolver) -> None:
    if not can_act_on(actor, lock, scope):
        logger.warning(
            "%s %s tried to unlock lock %s outside their scope",
            actor.role.value, actor.id, lock.id,
        )
        raise Unauthorized("This lock is outside your teaching scope", lock_id=lock.id)


def _staff_course_ids(actor: Actor, scope: ScopeResolver) -> set[uuid.UUID]:
    if actor.role == RoleEnum.TEACHER:
        return set(scope.teacher_scope(actor.id).course_ids)
    if actor.role == RoleEnum.HOD:
        return scope.department_course_ids(actor.id)
    if actor.role == RoleEnum.DEAN:
        return scope.school_course_ids(actor.id)
    return set()


def can_view_student(
    db: Session, actor: Actor, student_id: uuid.UUID, scope: ScopeResolver
) -> bool:
    """Self, admins, and staff sharing a course with the student.

    A student's courses are the ones they have sat quizzes in.
    """
    if actor.id == student_id or actor.role == RoleEnum.ADMIN:
        return True
    if actor.role == RoleEnum.STUDENT:
        return False
    if actor.role == RoleEnum.TEACHER and student_id in scope.teacher_scope(actor.id).student_ids:
        return True

    courses = _staff_course_ids(actor, scope)
    if not courses:
        return False
    shared = (
        db.query(Attempt.id)
        .filter(Attempt.student_id == student_id, Attempt.course_id.in_(list(courses)))
        .first()
    )
    return shared is not None


def authorize_student_view(
    db: Session, actor: Actor, student_id: uuid.UUID, scope: ScopeResolver
) -> None:
    if not can_view_student(db, actor, student_id, scope):
        logger.warning(
            "%s %s denied security records of student %s",
            actor.role.value, actor.id, student_id,
        )
        raise Unauthorized("This student is outside your scope", student_id=student_id)
