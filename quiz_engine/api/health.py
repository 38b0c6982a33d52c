"""Liveness and readiness endpoints."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quiz_engine.db.session import get_db
from quiz_engine.services.platform_client import PlatformClient, get_platform_client

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "healthy", "service": "secure-quiz-engine"}


@router.get("/health/ready")
def ready(
    db: Session = Depends(get_db),
    platform: PlatformClient = Depends(get_platform_client),
):
    """503 unless the database answers; a down platform only degrades."""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("Readiness: database unreachable: %s", e)
        database = "unreachable"

    checks = {
        "database": database,
        "platform": "ok" if platform.healthy() else "unreachable",
    }
    if database != "ok":
        return JSONResponse(status_code=503, content={"status": "unavailable", "checks": checks})
    status = "ready" if checks["platform"] == "ok" else "degraded"
    return {"status": status, "checks": checks}
