"""Question pool resolution and per-attempt sampling.

A quiz source is either a single authored quiz or a pool that draws from
several quizzes.  Both resolve to a flat list of candidate questions tagged
with the quiz they came from; an attempt freezes a sample of them as its
snapshot.
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import asdict, dataclass

from sqlalchemy.orm import Session

from quiz_engine.config import settings
from quiz_engine.core.errors import InsufficientQuestions, SourceNotFound
from quiz_engine.db.models import Quiz, QuizPool

logger = logging.getLogger(__name__)

_system_rng = random.SystemRandom()


@dataclass(frozen=True)
class QuestionSnapshot:
    question_id: str
    text: str
    options: tuple[str, ...]
    correct_option: int
    points: float
    origin_quiz_id: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["options"] = list(self.options)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "QuestionSnapshot":
        return cls(
            question_id=data["question_id"],
            text=data["text"],
            options=tuple(data["options"]),
            correct_option=int(data["correct_option"]),
            points=float(data.get("points", 1.0)),
            origin_quiz_id=data["origin_quiz_id"],
        )


# ── Sources ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DirectQuizSource:
    quiz: Quiz

    @property
    def id(self) -> uuid.UUID:
        return self.quiz.id

    @property
    def course_id(self) -> uuid.UUID:
        return self.quiz.course_id

    @property
    def unit_id(self) -> uuid.UUID | None:
        return self.quiz.unit_id

    @property
    def time_limit_minutes(self) -> int:
        return self.quiz.time_limit_minutes or settings.DEFAULT_TIME_LIMIT_MINUTES

    @property
    def passing_score(self) -> float:
        if self.quiz.passing_score is None:
            return settings.DEFAULT_PASSING_SCORE
        return self.quiz.passing_score


@dataclass(frozen=True)
class PoolSource:
    pool: QuizPool

    @property
    def id(self) -> uuid.UUID:
        return self.pool.id

    @property
    def course_id(self) -> uuid.UUID:
        return self.pool.course_id

    @property
    def unit_id(self) -> uuid.UUID | None:
        return self.pool.unit_id

    @property
    def time_limit_minutes(self) -> int:
        return self.pool.time_limit_minutes or settings.DEFAULT_TIME_LIMIT_MINUTES

    @property
    def passing_score(self) -> float:
        return self.pool.passing_score


QuizSource = DirectQuizSource | PoolSource


def resolve_source(db: Session, source_id: uuid.UUID) -> QuizSource:
    """Look the id up as a quiz first, then as an active pool."""
    quiz = db.get(Quiz, source_id)
    if quiz is not None:
        return DirectQuizSource(quiz)
    pool = db.get(QuizPool, source_id)
    if pool is not None and pool.is_active:
        return PoolSource(pool)
    raise SourceNotFound(source_id=source_id)


# ── Candidates & sampling ─────────────────────────────────────────────────────


def _snapshot_quiz(quiz: Quiz) -> list[QuestionSnapshot]:
    return [
        QuestionSnapshot(
            question_id=str(q.id),
            text=q.text,
            options=tuple(q.options),
            correct_option=q.correct_option,
            points=q.points if q.points is not None else 1.0,
            origin_quiz_id=str(quiz.id),
        )
        for q in quiz.questions
    ]


def collect_candidates(source: QuizSource) -> list[QuestionSnapshot]:
    """Every question the source can draw from, in authored order."""
    if isinstance(source, PoolSource):
        candidates: list[QuestionSnapshot] = []
        for quiz in source.pool.quizzes:
            candidates.extend(_snapshot_quiz(quiz))
        return candidates
    return _snapshot_quiz(source.quiz)


def sample_questions(
    candidates: list[QuestionSnapshot],
    n: int,
    rng: random.Random | None = None,
) -> list[QuestionSnapshot]:
    """Uniformly pick ``n`` distinct questions."""
    if n <= 0 or len(candidates) < n:
        raise InsufficientQuestions(available=len(candidates), required=max(n, 1))
    return (rng or _system_rng).sample(candidates, n)


def build_snapshot(
    source: QuizSource,
    rng: random.Random | None = None,
) -> list[QuestionSnapshot]:
    """Questions frozen into a new attempt."""
    candidates = collect_candidates(source)

    if isinstance(source, PoolSource):
        n = source.pool.questions_per_attempt
        snapshot = sample_questions(candidates, n, rng)
        logger.debug(
            "Pool %s: sampled %d of %d questions", source.id, n, len(candidates)
        )
        return snapshot

    if not candidates:
        raise InsufficientQuestions(available=0, required=1)
    subset = source.quiz.questions_per_attempt
    if subset:
        return sample_questions(candidates, subset, rng)
    return candidates
