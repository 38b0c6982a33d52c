"""Attempt creation, retrieval and submission routes."""

import logging
import uuid

from fastapi import APIRouter, Depends, Request, status

from quiz_engine.api.deps import get_attempt_service, get_current_actor, require_student
from quiz_engine.schemas.attempt import (
    AttemptCreate,
    AttemptResults,
    AttemptSubmit,
    AttemptSummary,
    AttemptView,
    AvailabilityRead,
    SubmissionResult,
)
from quiz_engine.services.access import Actor
from quiz_engine.services.attempts import AttemptService
from quiz_engine.services.rate_limiter import client_ip, require_attempt_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=AttemptView, status_code=status.HTTP_201_CREATED)
def create_attempt(
    body: AttemptCreate,
    actor: Actor = Depends(require_student),
    _rl=Depends(require_attempt_rate_limit),
    service: AttemptService = Depends(get_attempt_service),
):
    """Start a new attempt; the question set is frozen at this point."""
    attempt = service.create_attempt(actor.id, body.source_id, body.mode)
    return service.get_attempt(attempt.id, actor)


@router.get("/", response_model=list[AttemptSummary])
def list_my_attempts(
    source_id: uuid.UUID | None = None,
    actor: Actor = Depends(require_student),
    service: AttemptService = Depends(get_attempt_service),
):
    return service.list_attempts(actor.id, source_id)


@router.get("/availability/{source_id}", response_model=AvailabilityRead)
def check_availability(
    source_id: uuid.UUID,
    actor: Actor = Depends(require_student),
    service: AttemptService = Depends(get_attempt_service),
):
    """Whether the caller can start this quiz now, and why not."""
    return service.check_availability(actor.id, source_id)


@router.get("/{attempt_id}", response_model=AttemptView)
def get_attempt(
    attempt_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    service: AttemptService = Depends(get_attempt_service),
):
    return service.get_attempt(attempt_id, actor)


@router.post("/{attempt_id}/submit", response_model=SubmissionResult)
def submit_attempt(
    attempt_id: uuid.UUID,
    body: AttemptSubmit,
    request: Request,
    actor: Actor = Depends(require_student),
    _rl=Depends(require_attempt_rate_limit),
    service: AttemptService = Depends(get_attempt_service),
):
    """Grade the attempt, record violations and update the quiz lock."""
    return service.submit_attempt(
        attempt_id,
        actor.id,
        body.answers,
        body.security,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request),
    )


@router.get("/{attempt_id}/results", response_model=AttemptResults)
def get_results(
    attempt_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    service: AttemptService = Depends(get_attempt_service),
):
    return service.get_results(attempt_id, actor)
