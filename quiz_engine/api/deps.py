"""FastAPI dependencies shared across routes."""

import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from quiz_engine.core.security import decode_access_token
from quiz_engine.db.models import RoleEnum
from quiz_engine.db.session import get_db
from quiz_engine.services.access import Actor
from quiz_engine.services.attempts import AttemptService
from quiz_engine.services.collaborators import Collaborators, build_collaborators
from quiz_engine.tasks import CeleryNotifier

# Tokens are issued by the platform's auth service.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def get_current_actor(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> Actor:
    """Decode JWT into the calling actor, or 401."""
    payload = decode_access_token(token)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        actor = Actor(id=uuid.UUID(payload["sub"]), role=RoleEnum(payload["role"]))
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload"
        )
    request.state.actor_id = str(actor.id)
    return actor


def require_roles(*roles: RoleEnum):
    """Dependency factory — 403 unless the caller has one of *roles*."""

    def _check(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(r.value for r in roles)}",
            )
        return actor

    return _check


require_student = require_roles(RoleEnum.STUDENT)
require_admin = require_roles(RoleEnum.ADMIN)
require_staff = require_roles(RoleEnum.TEACHER, RoleEnum.HOD, RoleEnum.DEAN, RoleEnum.ADMIN)


def get_collaborators() -> Collaborators:
    """Platform-backed collaborators; overridden with fakes in tests."""
    return build_collaborators(CeleryNotifier())


def get_attempt_service(
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> AttemptService:
    return AttemptService(db, collaborators)
