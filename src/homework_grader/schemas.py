from __future__ import annotations

import base64
import mimetypes
from enum import IntEnum
from pathlib import Path
from typing import Annotated, Any, Dict, Iterable, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


UNANSWERED = "unanswered"
UNRECOGNIZED = "unrecognized"
SENTINELS = frozenset({UNANSWERED, UNRECOGNIZED})

# Legacy sentinels written by earlier prompts; folded into the canonical ones.
SENTINEL_ALIASES: Dict[str, str] = {
    "未作答": UNANSWERED,
    "無法辨識": UNRECOGNIZED,
    "未作答/無法辨識": UNRECOGNIZED,
    "unanswered/unrecognized": UNRECOGNIZED,
}

UNRESOLVED_REASON = "unresolved, requires manual review"


def is_sentinel(answer: Optional[str]) -> bool:
    text = (answer or "").strip()
    return text in SENTINELS or text in SENTINEL_ALIASES


def canonical_answer(answer: Optional[str]) -> str:
    """Map empty and legacy sentinel answers onto the canonical sentinels."""
    text = (answer or "").strip()
    if not text:
        return UNANSWERED
    return SENTINEL_ALIASES.get(text, text)


def _coerce_str(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value).removesuffix(".0")
    if isinstance(value, str):
        return value.strip()
    return value


def _coerce_type(value: Any) -> Any:
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return value


# Models echo ids back as numbers as often as strings.
QuestionId = Annotated[str, BeforeValidator(_coerce_str)]


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase JSON, either accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ── Answer key ──────────────────────────────────────────────────────────


class QuestionType(IntEnum):
    EXACT = 1
    FUZZY = 2
    RUBRIC = 3


class RubricDimension(CamelModel):
    name: str
    max_score: float = Field(gt=0)
    criteria: str = ""


class RubricLevel(CamelModel):
    label: str
    min: float
    max: float
    criteria: str = ""


class Rubric(CamelModel):
    levels: List[RubricLevel] = Field(default_factory=list)


class Question(CamelModel):
    id: QuestionId = Field(description="Question number as printed on the sheet, e.g. '1' or '1-1'")
    type: Annotated[QuestionType, BeforeValidator(_coerce_type)] = Field(
        description="1 = exact answer, 2 = several acceptable answers, 3 = rubric"
    )
    max_score: float = Field(gt=0, description="Full marks for this question")
    answer: Optional[str] = Field(default=None, description="Type 1: the single correct answer")
    reference_answer: Optional[str] = Field(
        default=None, description="Type 2/3: reference answer or key points"
    )
    acceptable_answers: List[str] = Field(
        default_factory=list, description="Type 2: accepted variants and synonyms"
    )
    rubric_dimensions: List[RubricDimension] = Field(
        default_factory=list,
        validation_alias=AliasChoices("rubricDimensions", "rubricsDimensions", "rubric_dimensions"),
        serialization_alias="rubricDimensions",
        description="Type 3: scoring dimensions summed into the question score",
    )
    rubric: Optional[Rubric] = Field(default=None, description="Type 3: 4-level holistic scale")
    needs_reanalysis: bool = False
    ai_diverged_from_prior: bool = False
    ai_original_detection: Optional[QuestionType] = None

    @field_validator("acceptable_answers", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class AnswerKey(CamelModel):
    questions: List[Question] = Field(default_factory=list)
    total_score: Optional[float] = None

    @model_validator(mode="after")
    def _check_totals(self) -> "AnswerKey":
        seen = set()
        duplicates = []
        for question in self.questions:
            if question.id in seen:
                duplicates.append(question.id)
            seen.add(question.id)
        if duplicates:
            raise ValueError(f"Duplicate question ids in answer key: {', '.join(duplicates)}")

        expected = sum(q.max_score for q in self.questions)
        if self.total_score is None:
            self.total_score = expected
        elif abs(self.total_score - expected) > 1e-6:
            raise ValueError(
                f"totalScore {self.total_score:g} does not equal the sum of maxScore ({expected:g})."
            )
        return self

    @classmethod
    def from_questions(cls, questions: Iterable[Question]) -> "AnswerKey":
        return cls(questions=list(questions))

    @property
    def question_ids(self) -> List[str]:
        return [q.id for q in self.questions]

    @property
    def flagged_questions(self) -> List[Question]:
        return [q for q in self.questions if q.needs_reanalysis]

    def get(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def order_of(self, question_id: str) -> int:
        try:
            return self.question_ids.index(question_id)
        except ValueError:
            return len(self.questions)

    def replace_questions(self, updated: Iterable[Question]) -> "AnswerKey":
        """Return a new key with the given questions swapped in by id; order is kept."""
        by_id = {q.id: q for q in updated}
        return AnswerKey.from_questions(by_id.get(q.id, q) for q in self.questions)


class AnswerKeyPayload(CamelModel):
    """Answer-key model output; totalScore is recomputed locally."""

    questions: List[Question] = Field(default_factory=list)
    total_score: Optional[float] = None

    def unique_questions(self) -> List[Question]:
        seen = {}
        for question in self.questions:
            seen.setdefault(question.id, question)
        return list(seen.values())


# ── Stage 1 ─────────────────────────────────────────────────────────────


class ExtractedAnswer(CamelModel):
    question_id: QuestionId = Field(description="Question id exactly as requested")
    student_answer: str = Field(description="Literal transcription of the student's handwriting")
    confidence: float = Field(
        default=0.0, description="Transcription certainty 0-100, unrelated to correctness"
    )

    @field_validator("student_answer", mode="before")
    @classmethod
    def _none_as_blank(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(100.0, number))

    @property
    def is_sentinel(self) -> bool:
        return is_sentinel(self.student_answer)


class ExtractionPayload(CamelModel):
    """Stage 1 model output."""

    answers: List[ExtractedAnswer] = Field(description="One entry per requested question")


# ── Stage 2 ─────────────────────────────────────────────────────────────


class MatchingDetails(CamelModel):
    matched_answer: Optional[str] = None
    match_type: Optional[str] = Field(default=None, description="exact | synonym | keyword")


class RubricScore(CamelModel):
    dimension: str
    score: float = 0.0
    max_score: float = 0.0


class GradingDetail(CamelModel):
    question_id: QuestionId
    student_answer: str = ""
    score: float = 0.0
    max_score: float = 0.0
    is_correct: bool = False
    reason: str = ""
    confidence: float = 0.0
    detected_type: Optional[int] = None
    matching_details: Optional[MatchingDetails] = None
    rubric_scores: List[RubricScore] = Field(default_factory=list)

    @field_validator("student_answer", "reason", mode="before")
    @classmethod
    def _none_as_blank(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("score", "max_score", "confidence", mode="before")
    @classmethod
    def _none_as_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("rubric_scores", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def placeholder(
        cls,
        question_id: str,
        max_score: float,
        student_answer: str = UNRECOGNIZED,
    ) -> "GradingDetail":
        return cls(
            question_id=question_id,
            student_answer=student_answer,
            score=0.0,
            max_score=max_score,
            is_correct=False,
            reason=UNRESOLVED_REASON,
            confidence=0.0,
        )


class Mistake(CamelModel):
    id: QuestionId = ""
    question: str = ""
    reason: str = ""


class GradingPayload(CamelModel):
    """Stage 2 model output."""

    total_score: Optional[float] = None
    details: Optional[List[GradingDetail]] = Field(
        default=None, description="One entry per question that was sent for grading"
    )
    mistakes: List[Mistake] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    feedback: List[str] = Field(default_factory=list)

    @field_validator("mistakes", "weaknesses", "suggestions", "feedback", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class GradingResult(CamelModel):
    total_score: float = 0.0
    details: List[GradingDetail] = Field(default_factory=list)
    mistakes: List[Mistake] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    feedback: List[str] = Field(default_factory=list)
    needs_review: bool = False
    review_reasons: List[str] = Field(default_factory=list)

    def recompute_total(self) -> float:
        self.total_score = sum(detail.score for detail in self.details)
        return self.total_score

    def add_review_reason(self, reason: str) -> None:
        self.needs_review = True
        if reason not in self.review_reasons:
            self.review_reasons.append(reason)

    def detail_for(self, question_id: str) -> Optional[GradingDetail]:
        for detail in self.details:
            if detail.question_id == question_id:
                return detail
        return None

    def merge_regrade(self, regraded: "GradingResult", question_ids: Iterable[str]) -> "GradingResult":
        """Apply a regrade of `question_ids`; every other detail is left as it was."""
        wanted = set(question_ids)
        replacements = {d.question_id: d for d in regraded.details if d.question_id in wanted}
        merged = self.model_copy(deep=True)
        merged.details = [replacements.get(d.question_id, d) for d in merged.details]
        merged.recompute_total()
        merged.mistakes = [m for m in merged.mistakes if m.id not in wanted]
        merged.mistakes.extend(m for m in regraded.mistakes if m.id in wanted)
        for reason in regraded.review_reasons:
            merged.add_review_reason(reason)
        return merged


# ── Images ──────────────────────────────────────────────────────────────


class SubmissionImage(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    data: bytes
    mime_type: str = "image/jpeg"

    @classmethod
    def from_path(cls, path: Path) -> "SubmissionImage":
        mime_type, _ = mimetypes.guess_type(str(path))
        return cls(data=Path(path).read_bytes(), mime_type=mime_type or "image/jpeg")

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")
