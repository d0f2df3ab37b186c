from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config import DomainHints
from .llm_client import LLMClient
from .model_router import ModelSession
from .prompts import build_grading_prompt
from .schemas import (
    UNANSWERED,
    AnswerKey,
    ExtractedAnswer,
    GradingDetail,
    GradingPayload,
    GradingResult,
)
from .scoring import apply_tier_policy, clamp

logger = logging.getLogger(__name__)

MISSING_DETAILS_REASON = "Model returned no per-question details"
KEYLESS_REASON = "Graded without an answer key; scores need confirmation"


@dataclass
class RegradeScope:
    """Grade only `question_ids`; everything else keeps its previous result."""

    question_ids: List[str]
    previous_details: List[GradingDetail] = field(default_factory=list)
    force_unrecognized_ids: List[str] = field(default_factory=list)


@dataclass
class GradeOptions:
    strict: bool = False
    domain: Optional[str] = None
    regrade: Optional[RegradeScope] = None
    skip_missing_retry: bool = False


def _sentinel_detail(answer: ExtractedAnswer, max_score: float) -> GradingDetail:
    reason = "No answer written" if answer.student_answer == UNANSWERED else "Answer could not be read"
    return GradingDetail(
        question_id=answer.question_id,
        student_answer=answer.student_answer,
        score=0.0,
        max_score=max_score,
        is_correct=False,
        reason=reason,
        confidence=answer.confidence,
    )


class Grader:
    """Stage 2: score sanitized transcriptions. The transcription itself is never changed."""

    def __init__(self, client: LLMClient, domain_hints: Optional[DomainHints] = None):
        self.client = client
        self.domain_hints = domain_hints or DomainHints.empty()

    def run(
        self,
        *,
        answers: Sequence[ExtractedAnswer],
        answer_key: Optional[AnswerKey],
        session: ModelSession,
        options: Optional[GradeOptions] = None,
    ) -> GradingResult:
        options = options or GradeOptions()
        if options.regrade is not None:
            wanted = set(options.regrade.question_ids)
            answers = [a for a in answers if a.question_id in wanted]

        by_id: Dict[str, ExtractedAnswer] = {a.question_id: a for a in answers}
        local: Dict[str, GradingDetail] = {}
        to_model: List[ExtractedAnswer] = []
        for answer in answers:
            if answer.is_sentinel:
                question = answer_key.get(answer.question_id) if answer_key else None
                local[answer.question_id] = _sentinel_detail(
                    answer, question.max_score if question else 0.0
                )
            else:
                to_model.append(answer)

        payload = GradingPayload(details=[])
        if to_model:
            prompt = build_grading_prompt(
                to_model,
                answer_key,
                domain_hint=self.domain_hints.grading(options.domain),
                domain=options.domain,
                strict=options.strict,
                regrade_ids=options.regrade.question_ids if options.regrade else None,
                previous_details=options.regrade.previous_details if options.regrade else None,
            )
            payload = self.client.generate_structured(
                model=session.active_model,
                parts=[prompt],
                response_schema=GradingPayload,
            )

        result = GradingResult(
            mistakes=payload.mistakes,
            weaknesses=payload.weaknesses,
            suggestions=payload.suggestions,
            feedback=payload.feedback,
        )
        if payload.details is None:
            result.add_review_reason(MISSING_DETAILS_REASON)

        scored: Dict[str, GradingDetail] = {}
        for detail in payload.details or []:
            answer = by_id.get(detail.question_id)
            if answer is None or answer.is_sentinel:
                logger.info("Ignoring grader output for unrequested question %s", detail.question_id)
                continue
            if detail.question_id in scored:
                continue
            scored[detail.question_id] = self._finalize(detail, answer, answer_key, options)

        scored.update(local)
        result.details = [scored[a.question_id] for a in answers if a.question_id in scored]
        result.recompute_total()
        if answer_key is None:
            result.add_review_reason(KEYLESS_REASON)
        return result

    def _finalize(
        self,
        detail: GradingDetail,
        answer: ExtractedAnswer,
        answer_key: Optional[AnswerKey],
        options: GradeOptions,
    ) -> GradingDetail:
        if detail.student_answer != answer.student_answer:
            logger.warning(
                "Grader rewrote the answer to question %s; restoring the transcription",
                answer.question_id,
            )
        # The grader's echo of the answer is never trusted.
        detail = detail.model_copy(
            update={"student_answer": answer.student_answer, "confidence": answer.confidence}
        )

        question = answer_key.get(answer.question_id) if answer_key else None
        if question is not None:
            return apply_tier_policy(detail, question, answer, strict=options.strict)

        # Keyless: clamp to the model's own maxScore.
        max_score = max(detail.max_score, 0.0)
        score = clamp(detail.score, 0.0, max_score)
        return detail.model_copy(
            update={
                "max_score": max_score,
                "score": score,
                "is_correct": bool(detail.is_correct) and max_score > 0 and score >= max_score,
            }
        )
