from __future__ import annotations

import csv
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .agents import AnswerExtractor
from .errors import CompletenessViolation, SchemaError, TransportError
from .grader import GradeOptions, Grader, RegradeScope
from .model_router import ModelSession
from .reconciliation import PassOutcome, ReconciliationEngine
from .sanitizer import sanitize_answers
from .schemas import AnswerKey, GradingDetail, GradingResult, SubmissionImage

logger = logging.getLogger(__name__)


class GradingPipeline:
    """Stage 1 -> sanitizer -> stage 2 -> reconciliation, strictly one call at a time."""

    def __init__(
        self,
        extractor: AnswerExtractor,
        grader: Grader,
        engine: Optional[ReconciliationEngine] = None,
    ):
        self.extractor = extractor
        self.grader = grader
        self.engine = engine or ReconciliationEngine()

    def grade(
        self,
        *,
        image: SubmissionImage,
        session: ModelSession,
        answer_key: Optional[AnswerKey] = None,
        options: Optional[GradeOptions] = None,
        estimated_ids: Optional[Sequence[str]] = None,
    ) -> GradingResult:
        """Grade one submission. Transport and schema failures become a terminal result."""
        options = options or GradeOptions()
        expected: Optional[List[str]]
        if options.regrade is not None:
            expected = list(options.regrade.question_ids)
        elif answer_key is not None:
            expected = answer_key.question_ids
        else:
            expected = list(estimated_ids) if estimated_ids else None

        def run_pass(scope: Optional[List[str]], prior: Optional[List[GradingDetail]]) -> PassOutcome:
            return self._run_pass(image, session, answer_key, options, scope, prior)

        try:
            reconciliation = self.engine.run(
                run_pass,
                expected,
                answer_key=answer_key,
                allow_retry=not options.skip_missing_retry,
            )
        except (TransportError, SchemaError) as e:
            logger.error("Grading with %s failed: %s", session.active_model, e)
            return failed_result(e, session, answer_key, expected or ())

        result = reconciliation.result
        for warning in session.warnings:
            result.add_review_reason(warning)
        if expected is not None:
            try:
                self.engine.verify(result, expected)
            except CompletenessViolation as e:
                logger.error("Incomplete grading result: %s", e)
                result.add_review_reason(f"Result failed the completeness check: {e.message}")
        logger.info(
            "Graded %d question(s), total %g, %d pass(es)%s",
            len(result.details),
            result.total_score,
            reconciliation.attempts,
            ", needs review" if result.needs_review else "",
        )
        return result

    def regrade(
        self,
        *,
        image: SubmissionImage,
        session: ModelSession,
        previous: GradingResult,
        question_ids: Sequence[str],
        answer_key: Optional[AnswerKey] = None,
        options: Optional[GradeOptions] = None,
        force_unrecognized_ids: Sequence[str] = (),
    ) -> GradingResult:
        """Grade `question_ids` again and merge them into `previous`; other ids are untouched."""
        scope = RegradeScope(
            question_ids=list(question_ids),
            previous_details=[d for d in previous.details if d.question_id in set(question_ids)],
            force_unrecognized_ids=list(force_unrecognized_ids),
        )
        options = replace(options or GradeOptions(), regrade=scope)
        regraded = self.grade(image=image, session=session, answer_key=answer_key, options=options)
        return previous.merge_regrade(regraded, question_ids)

    def _run_pass(
        self,
        image: SubmissionImage,
        session: ModelSession,
        answer_key: Optional[AnswerKey],
        options: GradeOptions,
        scope: Optional[List[str]],
        prior: Optional[List[GradingDetail]],
    ) -> PassOutcome:
        regrade = options.regrade
        if prior is None and regrade is not None:
            prior_attempt = regrade.previous_details or None
            forced = regrade.force_unrecognized_ids
        else:
            prior_attempt = prior
            forced = []

        extraction = self.extractor.run(
            image=image,
            session=session,
            required_ids=scope,
            domain=options.domain,
            prior_attempt=prior_attempt,
            force_unrecognized_ids=forced,
        )
        sanitized = sanitize_answers(extraction.answers, answer_key)

        pass_options = options
        if prior is not None:
            pass_options = replace(
                options, regrade=RegradeScope(question_ids=list(scope or []), previous_details=list(prior))
            )
        result = self.grader.run(
            answers=sanitized.answers,
            answer_key=answer_key,
            session=session,
            options=pass_options,
        )
        return PassOutcome(
            result=result,
            answers=sanitized.answers,
            gaps=extraction.gaps,
            tags=sanitized.tags,
        )


def failed_result(
    error: Exception,
    session: ModelSession,
    answer_key: Optional[AnswerKey] = None,
    expected_ids: Sequence[str] = (),
) -> GradingResult:
    """Terminal result for a submission whose model calls failed; it still covers every question."""
    if isinstance(error, TransportError) and error.is_model_missing:
        feedback = [f"Model {session.active_model} does not exist or is unavailable"]
    else:
        feedback = ["System error", getattr(error, "message", str(error))]

    if answer_key is not None:
        details = [GradingDetail.placeholder(q.id, q.max_score) for q in answer_key.questions]
    else:
        details = [GradingDetail.placeholder(qid, 0.0) for qid in expected_ids]
    result = GradingResult(total_score=0.0, details=details, feedback=feedback)
    result.add_review_reason(f"Grading failed ({type(error).__name__}); grade manually")
    return result


def load_answer_key(path: Path) -> AnswerKey:
    return AnswerKey.model_validate_json(Path(path).read_text(encoding="utf-8"))


def save_answer_key(path: Path, answer_key: AnswerKey) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(answer_key.to_json_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
    )


def save_exam_report(path: Path, submission_id: str, result: GradingResult) -> None:
    payload: Dict[str, Any] = {"submissionId": submission_id, **result.to_json_dict()}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def save_summary_csv(path: Path, rows: Iterable[Dict[str, Any]]) -> None:
    rows_list: List[Dict[str, Any]] = list(rows)
    if not rows_list:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    fieldnames = [
        "submission_id",
        "total_score",
        "max_score",
        "needs_review",
        "item_breakdown",
    ]
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows_list:
            writer.writerow(row)


def save_review_queue(path: Path, items: Iterable[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(list(items), ensure_ascii=False, indent=2), encoding="utf-8")
