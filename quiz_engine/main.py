"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from quiz_engine.config import settings
from quiz_engine.api import (
    health_router,
    attempts_router,
    locks_router,
    security_router,
)
from quiz_engine.core.errors import QuizEngineError
from quiz_engine.schemas.common import ErrorResponse

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-25s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Secure quiz engine starting (env=%s)", settings.ENV)
    yield
    logger.info("Secure quiz engine shut down")


app = FastAPI(
    title="Secure Quiz Engine API",
    description="Randomized quiz attempts, proctoring penalties and tiered unlocks",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Middleware ─────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)

# ── Errors ────────────────────────────────────────────────────────────────────


@app.exception_handler(QuizEngineError)
async def quiz_engine_error_handler(request: Request, exc: QuizEngineError):
    logger.info("%s %s → %s", request.method, request.url.path, exc.code.value)
    body = ErrorResponse(**exc.to_dict())
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(health_router, tags=["Health"])
app.include_router(attempts_router, prefix="/api/attempts", tags=["Attempts"])
app.include_router(locks_router, prefix="/api/locks", tags=["Locks"])
app.include_router(security_router, prefix="/api/security", tags=["Security"])


@app.get("/")
async def root():
    return {
        "name": "Secure Quiz Engine API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
