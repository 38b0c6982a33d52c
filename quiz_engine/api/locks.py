"""Quiz lock dashboards and tiered unlock routes."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from quiz_engine.api.deps import get_collaborators, get_current_actor, require_staff
from quiz_engine.core.errors import Unauthorized
from quiz_engine.db.models import RoleEnum
from quiz_engine.db.session import get_db
from quiz_engine.schemas.lock import (
    ActorUnlockRead,
    LockRead,
    LockStatus,
    UnlockEventRead,
    UnlockHistory,
    UnlockRequest,
    UnlockResult,
)
from quiz_engine.services import locks
from quiz_engine.services.access import (
    Actor,
    authorize_unlock,
    can_act_on,
    list_locked_for,
    unlock_tier_for,
)
from quiz_engine.services.collaborators import Collaborators

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=list[LockRead])
def list_locked(
    actor: Actor = Depends(require_staff),
    collaborators: Collaborators = Depends(get_collaborators),
    db: Session = Depends(get_db),
):
    """Locked quizzes waiting on the caller's tier, within their scope."""
    return list_locked_for(db, actor, collaborators.scope)


@router.get("/history/mine", response_model=list[ActorUnlockRead])
def my_unlock_history(
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """Unlocks the caller granted at their own tier, newest first."""
    rows = locks.unlock_history_for_actor(db, actor.id, unlock_tier_for(actor), limit=limit)
    return [
        ActorUnlockRead(**{**row, "event": UnlockEventRead.model_validate(row["event"])})
        for row in rows
    ]


@router.get("/status/{student_id}/{quiz_id}", response_model=LockStatus)
def get_lock_status(
    student_id: uuid.UUID,
    quiz_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    collaborators: Collaborators = Depends(get_collaborators),
    db: Session = Depends(get_db),
):
    status = locks.lock_status(db, student_id, quiz_id)
    lock = status["lock"]
    if actor.role == RoleEnum.STUDENT:
        if actor.id != student_id:
            raise Unauthorized()
    elif lock is not None and not can_act_on(actor, lock, collaborators.scope):
        raise Unauthorized(lock_id=lock.id)
    return LockStatus(
        **{**status, "lock": LockRead.model_validate(lock) if lock else None}
    )


@router.get("/{lock_id}/history", response_model=UnlockHistory)
def get_unlock_history(
    lock_id: uuid.UUID,
    actor: Actor = Depends(require_staff),
    collaborators: Collaborators = Depends(get_collaborators),
    db: Session = Depends(get_db),
):
    history = locks.unlock_history(db, lock_id)
    authorize_unlock(actor, history["lock"], collaborators.scope)
    return UnlockHistory(
        lock_id=lock_id,
        **{
            tier: [UnlockEventRead.model_validate(e) for e in history[tier]]
            for tier in ("teacher", "hod", "dean", "admin")
        },
    )


@router.post("/{lock_id}/unlock", response_model=UnlockResult)
def unlock_quiz(
    lock_id: uuid.UUID,
    body: UnlockRequest,
    actor: Actor = Depends(require_staff),
    collaborators: Collaborators = Depends(get_collaborators),
    db: Session = Depends(get_db),
):
    """Grant another attempt at the caller's tier (admins override any tier)."""
    tier = unlock_tier_for(actor)
    lock, event = locks.unlock(
        db,
        lock_id,
        tier=tier,
        actor_id=actor.id,
        reason=body.reason,
        notes=body.notes,
        authorize=lambda current: authorize_unlock(actor, current, collaborators.scope),
    )
    return UnlockResult(
        lock=LockRead.model_validate(lock),
        event=UnlockEventRead.model_validate(event),
    )
