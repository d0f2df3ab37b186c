"""Completeness enforcement for grading results.

The model may skip questions in either stage. Reconciliation puts a
placeholder in every hole (in answer-key order), retries the holes once,
adopts only real answers from the retry, and decides whether a teacher must
review the result. Retrying is a loop with an attempt counter, so a run makes
at most ``max_attempts`` passes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import CompletenessViolation, SchemaError, TransportError
from .schemas import (
    UNRECOGNIZED,
    AnswerKey,
    ExtractedAnswer,
    GradingDetail,
    GradingResult,
    is_sentinel,
)

logger = logging.getLogger(__name__)

SUSPICIOUS_TRANSCRIPTION = "Suspicious transcription downgraded"

UNCERTAINTY_PATTERN = re.compile(
    r"[?？]|模糊|無法|不確定|看不清楚|not sure|uncertain|unclear|illegible",
    re.IGNORECASE,
)


class ReconciliationState(Enum):
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass
class PassOutcome:
    """Everything one extraction + grading pass produced."""

    result: GradingResult
    answers: List[ExtractedAnswer]
    gaps: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


# (question ids in scope or None when keyless, prior failed details or None on the first pass)
PassRunner = Callable[[Optional[List[str]], Optional[List[GradingDetail]]], PassOutcome]


@dataclass
class Reconciliation:
    result: GradingResult
    attempts: int
    unresolved_ids: List[str]
    state: ReconciliationState = ReconciliationState.COMPLETED


def _ids(question_ids: Sequence[str]) -> str:
    return ", ".join(question_ids)


class ReconciliationEngine:
    def __init__(self, max_attempts: int = 2):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts

    def run(
        self,
        run_pass: PassRunner,
        expected_ids: Optional[Sequence[str]],
        answer_key: Optional[AnswerKey] = None,
        allow_retry: bool = True,
    ) -> Reconciliation:
        state = ReconciliationState.PENDING
        if expected_ids is not None and not expected_ids:
            # An empty key is complete with no details and no model call.
            result = self.flag_for_review(GradingResult())
            return Reconciliation(result=result, attempts=0, unresolved_ids=[])

        attempts = 1
        if expected_ids is None:
            # Keyless grading without an estimate: the transcription defines the questions.
            outcome = run_pass(None, None)
            scope = [a.question_id for a in outcome.answers]
        else:
            scope = list(expected_ids)
            outcome = run_pass(scope, None)

        result, missing = self.fill_missing(outcome, scope, answer_key)
        while missing and allow_retry and attempts < self.max_attempts:
            attempts += 1
            logger.info("Retrying %d missing question(s): %s", len(missing), _ids(missing))
            prior = [d for d in result.details if d.question_id in missing]
            try:
                retry_outcome = run_pass(list(missing), prior)
            except (TransportError, SchemaError) as e:
                logger.warning("Retry for missing questions failed: %s", e)
                result.add_review_reason(f"Retry for question(s) {_ids(missing)} failed: {e.message}")
                break
            retry_result, retry_missing = self.fill_missing(retry_outcome, missing, answer_key)
            result, missing = self.merge_retry(result, retry_result, missing, retry_missing)

        self.flag_for_review(result)
        state = ReconciliationState.COMPLETED
        return Reconciliation(result=result, attempts=attempts, unresolved_ids=list(missing), state=state)

    def fill_missing(
        self,
        outcome: PassOutcome,
        expected_ids: Sequence[str],
        answer_key: Optional[AnswerKey] = None,
    ) -> Tuple[GradingResult, List[str]]:
        """Return the pass result with exactly one detail per expected id, and the ids filled in."""
        result = outcome.result.model_copy(deep=True)
        expected = list(dict.fromkeys(expected_ids))
        returned: Dict[str, GradingDetail] = {}
        for detail in result.details:
            if detail.question_id in expected and detail.question_id not in returned:
                returned[detail.question_id] = detail

        gaps = set(outcome.gaps)
        transcripts = {a.question_id: a.student_answer for a in outcome.answers}
        missing = [qid for qid in expected if qid not in returned or qid in gaps]
        for qid in missing:
            question = answer_key.get(qid) if answer_key else None
            if question is not None:
                max_score = question.max_score
            elif qid in returned:
                max_score = returned[qid].max_score
            else:
                max_score = 0.0
            returned[qid] = GradingDetail.placeholder(
                qid, max_score, student_answer=transcripts.get(qid, UNRECOGNIZED)
            )

        result.details = [returned[qid] for qid in expected]
        result.recompute_total()

        for tag in outcome.tags:
            result.add_review_reason(f"{SUSPICIOUS_TRANSCRIPTION} ({tag})")
        if missing:
            logger.warning("Model omitted %d question(s): %s", len(missing), _ids(missing))
            result.add_review_reason(
                f"Model omitted {len(missing)} question(s); placeholders added ({_ids(missing)})"
            )
        return result, missing

    def merge_retry(
        self,
        result: GradingResult,
        retry_result: GradingResult,
        missing: Sequence[str],
        retry_missing: Sequence[str] = (),
    ) -> Tuple[GradingResult, List[str]]:
        """Adopt retry details that carry a real answer; keep the placeholders otherwise."""
        merged = result.model_copy(deep=True)
        candidates = {
            d.question_id: d
            for d in retry_result.details
            if d.question_id in missing
            and d.question_id not in retry_missing
            and not is_sentinel(d.student_answer)
        }
        merged.details = [candidates.get(d.question_id, d) for d in merged.details]
        merged.recompute_total()

        recovered = [qid for qid in missing if qid in candidates]
        still_missing = [qid for qid in missing if qid not in candidates]
        merged.mistakes.extend(m for m in retry_result.mistakes if m.id in recovered)
        for item in retry_result.weaknesses:
            if item not in merged.weaknesses:
                merged.weaknesses.append(item)
        for item in retry_result.suggestions:
            if item not in merged.suggestions:
                merged.suggestions.append(item)
        for reason in retry_result.review_reasons:
            if reason.startswith(SUSPICIOUS_TRANSCRIPTION):
                merged.add_review_reason(reason)

        if recovered:
            logger.info("Retry recovered question(s): %s", _ids(recovered))
            merged.add_review_reason(f"Retry recovered question(s) {_ids(recovered)}")
        if still_missing:
            merged.add_review_reason(
                f"{len(still_missing)} question(s) still unresolved after retry ({_ids(still_missing)})"
            )
        return merged, still_missing

    def flag_for_review(self, result: GradingResult) -> GradingResult:
        if not result.details:
            if result.total_score == 0:
                result.add_review_reason("Total score is 0 and there are no per-question details")
            if not result.mistakes:
                result.add_review_reason("No questions or mistakes detected; check that parsing succeeded")

        text_blob = " ".join([*result.feedback, *result.suggestions, *result.weaknesses])
        if UNCERTAINTY_PATTERN.search(text_blob):
            result.add_review_reason("Model feedback expresses uncertainty")
        return result

    def verify(self, result: GradingResult, expected_ids: Sequence[str]) -> None:
        """Raise CompletenessViolation unless every expected id appears exactly once and totals agree."""
        seen: List[str] = [d.question_id for d in result.details]
        duplicates = sorted({qid for qid in seen if seen.count(qid) > 1})
        missing = [qid for qid in expected_ids if qid not in seen]
        extra = [qid for qid in seen if qid not in set(expected_ids)]
        if missing or duplicates or extra:
            raise CompletenessViolation(
                f"Result does not cover the answer key exactly once (extra: {_ids(extra) or 'none'})",
                missing_ids=missing,
                duplicate_ids=duplicates,
            )
        total = sum(d.score for d in result.details)
        if abs(total - result.total_score) > 1e-9:
            raise CompletenessViolation(
                f"totalScore {result.total_score:g} does not equal the sum of detail scores ({total:g})"
            )
