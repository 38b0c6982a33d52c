"""SQLAlchemy engine & session factory."""

from collections.abc import Iterator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from quiz_engine.config import settings

# Created on first use so importing models never opens a connection
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        url = settings.DATABASE_URL
        kwargs: dict = {"echo": settings.DATABASE_ECHO, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            # Celery workers and the request threadpool share one local file
            kwargs["connect_args"] = {"check_same_thread": False}
        _engine = create_engine(url, **kwargs)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Session factory used by the API and by Celery tasks."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine(), autocommit=False, autoflush=False)
    return _SessionLocal


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


def get_db() -> Iterator[Session]:
    """FastAPI dependency — one session per request, always closed."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
