"""Grading and anti-cheating penalties for multiple-choice attempts.

Grading is pure: it takes the frozen question snapshot, the submitted
answers and the client's proctoring counters, and returns a ``GradeResult``.
Nothing here touches the database.

Two penalty policies exist, selected by the attempt mode:
  * ``secure``: additive points per signal kind
    (auto-submit +15, tab switches >= 3 +10, fullscreen exits >= 2 +10,
    blocked shortcuts >= 5 +5, any window minimize +8)
  * ``unit``: ``min(20, violations * 5 + (tab switches > 3 ? 10 : 0))``
    where browser capability errors are not counted as violations
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from quiz_engine.db.models import AttemptModeEnum
from quiz_engine.schemas.attempt import AnswerSubmit, SecuritySignals
from quiz_engine.services.question_pool import QuestionSnapshot
from quiz_engine.services.violations import is_technical

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GradedAnswer:
    question_id: str
    selected_option: int | None
    is_correct: bool
    points_earned: float

    def to_dict(self) -> dict:
        return {
            "question_id": self.question_id,
            "selected_option": self.selected_option,
            "is_correct": self.is_correct,
            "points_earned": self.points_earned,
        }


@dataclass
class GradeResult:
    answers: list[GradedAnswer]
    raw_score: float
    max_score: float
    raw_percentage: float
    penalty: float
    final_percentage: float
    final_score: float
    passed: bool
    penalty_breakdown: dict[str, float] = field(default_factory=dict)


# ── Answer matching ───────────────────────────────────────────────────────────


def grade_answers(
    snapshot: Iterable[QuestionSnapshot],
    answers: Iterable[AnswerSubmit],
) -> tuple[list[GradedAnswer], float, float]:
    """Score each snapshot question; returns (graded, score, max_score).

    Answers are matched by question id (first one wins).  Missing answers,
    ``None`` and out-of-range indices count as incorrect.
    """
    selected: dict[str, int | None] = {}
    for answer in answers:
        selected.setdefault(answer.question_id, answer.selected_option)

    graded: list[GradedAnswer] = []
    score = 0.0
    max_score = 0.0
    for question in snapshot:
        choice = selected.get(question.question_id)
        in_range = choice is not None and 0 <= choice < len(question.options)
        correct = in_range and choice == question.correct_option
        earned = question.points if correct else 0.0
        score += earned
        max_score += question.points
        graded.append(GradedAnswer(question.question_id, choice, correct, earned))
    return graded, score, max_score


# ── Penalty policies ──────────────────────────────────────────────────────────


def secure_penalty(signals: SecuritySignals) -> tuple[float, dict[str, float]]:
    breakdown: dict[str, float] = {}
    if signals.auto_submitted:
        breakdown["auto_submitted"] = 15.0
    if signals.tab_switch_count >= 3:
        breakdown["tab_switches"] = 10.0
    if signals.fullscreen_exits >= 2:
        breakdown["fullscreen_exits"] = 10.0
    if signals.blocked_shortcut_count >= 5:
        breakdown["blocked_shortcuts"] = 5.0
    if signals.window_minimize_count >= 1:
        breakdown["window_minimizes"] = 8.0
    return sum(breakdown.values()), breakdown


def unit_penalty(signals: SecuritySignals) -> tuple[float, dict[str, float]]:
    counted = [v for v in signals.violations if not is_technical(v)]
    breakdown: dict[str, float] = {}
    if counted:
        breakdown["violations"] = 5.0 * len(counted)
    if signals.tab_switch_count > 3:
        breakdown["excessive_tab_switching"] = 10.0
    return min(20.0, sum(breakdown.values())), breakdown


PENALTY_POLICIES: dict[
    AttemptModeEnum, Callable[[SecuritySignals], tuple[float, dict[str, float]]]
] = {
    AttemptModeEnum.SECURE: secure_penalty,
    AttemptModeEnum.UNIT: unit_penalty,
}


# ── Main grading function ─────────────────────────────────────────────────────


def grade_attempt(
    snapshot: list[QuestionSnapshot],
    answers: Iterable[AnswerSubmit],
    signals: SecuritySignals,
    *,
    mode: AttemptModeEnum,
    passing_score: float,
) -> GradeResult:
    """Grade a submission and apply the mode's penalty policy.

    The final percentage is clamped to [0, 100]; the final score is that
    percentage of the maximum, so it never exceeds ``max_score``.
    """
    graded, raw_score, max_score = grade_answers(snapshot, answers)
    raw_pct = 100.0 * raw_score / max_score if max_score > 0 else 0.0

    penalty, breakdown = PENALTY_POLICIES[mode](signals)
    final_pct = min(100.0, max(0.0, raw_pct - penalty))

    result = GradeResult(
        answers=graded,
        raw_score=round(raw_score, 2),
        max_score=round(max_score, 2),
        raw_percentage=round(raw_pct, 2),
        penalty=round(penalty, 2),
        final_percentage=round(final_pct, 2),
        final_score=round(final_pct / 100.0 * max_score, 2),
        passed=final_pct >= passing_score,
        penalty_breakdown=breakdown,
    )
    logger.debug(
        "Graded %d questions: raw=%.2f%% penalty=%.1f final=%.2f%% passed=%s",
        len(graded), result.raw_percentage, result.penalty,
        result.final_percentage, result.passed,
    )
    return result
