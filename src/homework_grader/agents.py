from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config import DomainHints
from .corrections import CorrectionLog
from .llm_client import LLMClient
from .model_router import ModelSession
from .prompts import build_answer_key_prompt, build_extraction_prompt, build_reanalyze_section
from .schemas import (
    UNANSWERED,
    UNRECOGNIZED,
    AnswerKey,
    AnswerKeyPayload,
    ExtractedAnswer,
    ExtractionPayload,
    GradingDetail,
    Question,
    QuestionType,
    SubmissionImage,
    canonical_answer,
)

logger = logging.getLogger(__name__)

REANALYSIS_PLACEHOLDER = "Could not re-read this question from the image; please edit it manually."


@dataclass
class ExtractionOutcome:
    answers: List[ExtractedAnswer]
    # Required ids the model left out; synthesized as "unanswered".
    gaps: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)


class AnswerExtractor:
    """Stage 1: transcribe the submission. Never judges correctness."""

    def __init__(
        self,
        client: LLMClient,
        domain_hints: Optional[DomainHints] = None,
        correction_log: Optional[CorrectionLog] = None,
    ):
        self.client = client
        self.domain_hints = domain_hints or DomainHints.empty()
        self.correction_log = correction_log

    def run(
        self,
        *,
        image: SubmissionImage,
        session: ModelSession,
        required_ids: Optional[Sequence[str]] = None,
        domain: Optional[str] = None,
        prior_attempt: Optional[Sequence[GradingDetail]] = None,
        force_unrecognized_ids: Sequence[str] = (),
    ) -> ExtractionOutcome:
        examples = self.correction_log.examples(domain) if self.correction_log else []
        prompt = build_extraction_prompt(
            required_ids,
            domain_hint=self.domain_hints.extraction(domain),
            domain=domain,
            correction_examples=examples,
            prior_attempt=prior_attempt,
        )
        payload = self.client.generate_structured(
            model=session.active_model,
            parts=[prompt, image],
            response_schema=ExtractionPayload,
        )
        outcome = enforce_required_ids(payload.answers, required_ids)
        if force_unrecognized_ids:
            forced = set(force_unrecognized_ids)
            outcome.answers = [
                a.model_copy(update={"student_answer": UNRECOGNIZED, "confidence": 0.0})
                if a.question_id in forced
                else a
                for a in outcome.answers
            ]
        if outcome.gaps:
            logger.warning(
                "Transcription omitted %d question(s): %s", len(outcome.gaps), ", ".join(outcome.gaps)
            )
        if outcome.dropped:
            logger.info(
                "Dropped unrequested question ids from transcription: %s", ", ".join(outcome.dropped)
            )
        return outcome


def enforce_required_ids(
    answers: Sequence[ExtractedAnswer],
    required_ids: Optional[Sequence[str]],
) -> ExtractionOutcome:
    """Make stage-1 cardinality independent of what the model returned."""
    required = list(dict.fromkeys(required_ids or []))
    required_set = set(required)
    seen: Dict[str, ExtractedAnswer] = {}
    dropped: List[str] = []
    for answer in answers:
        if required and answer.question_id not in required_set:
            dropped.append(answer.question_id)
            continue
        if answer.question_id in seen:
            continue
        seen[answer.question_id] = answer.model_copy(
            update={"student_answer": canonical_answer(answer.student_answer)}
        )

    if not required:
        return ExtractionOutcome(answers=list(seen.values()), dropped=dropped)

    gaps = [qid for qid in required if qid not in seen]
    ordered = [
        seen.get(qid) or ExtractedAnswer(question_id=qid, student_answer=UNANSWERED, confidence=0.0)
        for qid in required
    ]
    return ExtractionOutcome(answers=ordered, gaps=gaps, dropped=dropped)


class AnswerKeyExtractor:
    """Builds an AnswerKey from a reference answer sheet; runs once per assignment."""

    def __init__(self, client: LLMClient, domain_hints: Optional[DomainHints] = None):
        self.client = client
        self.domain_hints = domain_hints or DomainHints.empty()

    def _prompt(self, domain: Optional[str], prior_weight_types: Optional[Sequence[int]]) -> str:
        return build_answer_key_prompt(
            domain_hint=self.domain_hints.answer_key(domain),
            domain=domain,
            prior_weight_types=prior_weight_types,
        )

    def extract(
        self,
        *,
        image: SubmissionImage,
        session: ModelSession,
        domain: Optional[str] = None,
        prior_weight_types: Optional[Sequence[int]] = None,
    ) -> AnswerKey:
        payload = self.client.generate_structured(
            model=session.active_model,
            parts=[self._prompt(domain, prior_weight_types), image],
            response_schema=AnswerKeyPayload,
        )
        # totalScore is always recomputed rather than trusted.
        answer_key = AnswerKey.from_questions(payload.unique_questions())
        logger.info(
            "Extracted answer key: %d questions, %g points",
            len(answer_key.questions),
            answer_key.total_score,
        )
        return answer_key

    def reanalyze(
        self,
        *,
        image: SubmissionImage,
        answer_key: AnswerKey,
        session: ModelSession,
        domain: Optional[str] = None,
        prior_weight_types: Optional[Sequence[int]] = None,
    ) -> AnswerKey:
        """Re-extract only the questions flagged `needs_reanalysis`; others are untouched."""
        flagged = answer_key.flagged_questions
        if not flagged:
            return answer_key

        requested = [q.id for q in flagged]
        logger.info("Re-analyzing %d question(s): %s", len(requested), ", ".join(requested))
        prompt = "\n\n".join(
            [self._prompt(domain, prior_weight_types), build_reanalyze_section(requested)]
        )
        payload = self.client.generate_structured(
            model=session.active_model,
            parts=[prompt, image],
            response_schema=AnswerKeyPayload,
        )

        returned = {q.id: q for q in payload.unique_questions() if q.id in requested}
        updated: List[Question] = []
        for original in flagged:
            question = returned.get(original.id)
            if question is None:
                logger.warning("Re-analysis omitted question %s; keeping a placeholder", original.id)
                question = Question(
                    id=original.id,
                    type=QuestionType.FUZZY,
                    max_score=original.max_score,
                    reference_answer=REANALYSIS_PLACEHOLDER,
                    needs_reanalysis=True,
                )
            else:
                question = question.model_copy(update={"needs_reanalysis": False})
            updated.append(question)
        return answer_key.replace_questions(updated)
