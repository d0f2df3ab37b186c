"""Local enforcement of the three-tier scoring policy on model-scored details."""

from __future__ import annotations

import re
import unicodedata
from typing import List, Optional

from .schemas import (
    ExtractedAnswer,
    GradingDetail,
    MatchingDetails,
    Question,
    QuestionType,
    RubricLevel,
    RubricScore,
)

STRICT_CONFIDENCE_FLOOR = 60.0

SYMBOL_VARIANTS = str.maketrans(
    {
        "○": "O",
        "〇": "O",
        "◯": "O",
        "⭕": "O",
        "✓": "O",
        "✔": "O",
        "×": "X",
        "✗": "X",
        "✘": "X",
        "╳": "X",
        "—": "-",
        "–": "-",
        "−": "-",
        "“": '"',
        "”": '"',
        "‘": "'",
        "’": "'",
    }
)
TRAILING_PUNCTUATION = "。.，,、；;：:！!？?"
WHITESPACE = re.compile(r"\s+")

# Fractions of maxScore used when a Type 3 question has neither dimensions nor levels.
DEFAULT_HOLISTIC_LEVELS = (
    ("excellent", 0.9, 1.0),
    ("good", 0.7, 0.9),
    ("fair", 0.5, 0.7),
    ("needs work", 0.0, 0.5),
)


def normalize_answer(text: Optional[str]) -> str:
    """Fold width, symbol variants, whitespace, trailing punctuation and case."""
    folded = unicodedata.normalize("NFKC", text or "").translate(SYMBOL_VARIANTS)
    folded = WHITESPACE.sub("", folded).rstrip(TRAILING_PUNCTUATION)
    return folded.casefold()


def match_answer(student_answer: str, question: Question) -> Optional[MatchingDetails]:
    target = normalize_answer(student_answer)
    if not target:
        return None
    if question.answer and normalize_answer(question.answer) == target:
        return MatchingDetails(matched_answer=question.answer, match_type="exact")
    for alternative in question.acceptable_answers:
        if normalize_answer(alternative) == target:
            return MatchingDetails(matched_answer=alternative, match_type="synonym")
    return None


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def holistic_levels(question: Question) -> List[RubricLevel]:
    if question.rubric and question.rubric.levels:
        return list(question.rubric.levels)
    return [
        RubricLevel(label=label, min=low * question.max_score, max=high * question.max_score)
        for label, low, high in DEFAULT_HOLISTIC_LEVELS
    ]


def holistic_label(score: float, question: Question) -> Optional[str]:
    for level in sorted(holistic_levels(question), key=lambda lv: lv.max, reverse=True):
        if level.min <= score <= level.max:
            return level.label
    return None


def _score_rubric(detail: GradingDetail, question: Question) -> float:
    if not question.rubric_dimensions:
        score = clamp(detail.score, 0.0, question.max_score)
        label = holistic_label(score, question)
        if label and not detail.reason.startswith(f"[{label}]"):
            detail.reason = f"[{label}] {detail.reason}".strip()
        return score

    dimensions = {d.name: d for d in question.rubric_dimensions}
    kept: List[RubricScore] = []
    for entry in detail.rubric_scores:
        dimension = dimensions.get(entry.dimension)
        if dimension is None or any(k.dimension == entry.dimension for k in kept):
            continue
        kept.append(
            RubricScore(
                dimension=entry.dimension,
                score=clamp(entry.score, 0.0, dimension.max_score),
                max_score=dimension.max_score,
            )
        )
    detail.rubric_scores = kept
    if not kept:
        return clamp(detail.score, 0.0, question.max_score)
    return clamp(sum(k.score for k in kept), 0.0, question.max_score)


def apply_tier_policy(
    detail: GradingDetail,
    question: Question,
    answer: ExtractedAnswer,
    strict: bool = False,
) -> GradingDetail:
    """Return a copy of `detail` whose score obeys the question's tier."""
    detail = detail.model_copy(deep=True)
    detail.max_score = question.max_score

    if question.type == QuestionType.EXACT:
        match = match_answer(answer.student_answer, question)
        if match is not None:
            detail.matching_details = match
            detail.is_correct = True
        detail.score = question.max_score if detail.is_correct else 0.0
        detail.rubric_scores = []
    elif question.type == QuestionType.FUZZY:
        match = match_answer(answer.student_answer, question)
        if match is not None:
            detail.matching_details = match
            detail.score = question.max_score
        else:
            detail.score = clamp(detail.score, 0.0, question.max_score)
        detail.rubric_scores = []
    elif question.type == QuestionType.RUBRIC:
        detail.score = _score_rubric(detail, question)
        detail.matching_details = None
    else:
        raise ValueError(f"Unhandled question type: {question.type!r}")

    if strict and detail.score > 0 and answer.confidence < STRICT_CONFIDENCE_FLOOR:
        detail.score = 0.0
        detail.reason = f"{detail.reason} (strict mode: handwriting too uncertain for credit)".strip()

    detail.is_correct = detail.score >= question.max_score
    return detail
