"""
End-to-end tests for one submission through both stages.
"""

import csv
import json

from homework_grader.agents import AnswerExtractor
from homework_grader.errors import TransportError
from homework_grader.grader import GradeOptions, Grader
from homework_grader.pipeline import (
    GradingPipeline,
    load_answer_key,
    save_answer_key,
    save_exam_report,
    save_summary_csv,
)
from homework_grader.reconciliation import Reconciliation, ReconciliationEngine
from homework_grader.schemas import (
    UNANSWERED,
    UNRECOGNIZED,
    UNRESOLVED_REASON,
    AnswerKey,
    GradingDetail,
    GradingResult,
)

from tests.helpers import detail, extraction, grading


def _pipeline(client):
    return GradingPipeline(AnswerExtractor(client), Grader(client))


def test_omitted_question_is_synthesized(make_client, session, image, answer_key):
    client, transport = make_client(
        extraction(("1", "Paris", 95)),
        grading(detail("1", "Paris", 2, 2)),
        extraction(),
    )

    result = _pipeline(client).grade(image=image, session=session, answer_key=answer_key)

    assert [d.question_id for d in result.details] == ["1", "2"]
    missing = result.detail_for("2")
    assert missing.score == 0
    assert missing.is_correct is False
    assert result.total_score == 2
    assert result.needs_review
    assert any("2" in reason for reason in result.review_reasons)
    # first pass: extract + grade; retry: extract only, the sentinel is scored locally
    assert len(transport.calls) == 3


def test_long_answer_on_small_question_is_not_graded(make_client, session, image, answer_key):
    client, transport = make_client(
        extraction(("1", "Paris", 95), ("2", "x" * 50, 60)),
        grading(detail("1", "Paris", 2, 2)),
    )

    result = _pipeline(client).grade(image=image, session=session, answer_key=answer_key)

    assert result.detail_for("2").student_answer == UNRECOGNIZED
    assert result.detail_for("2").score == 0
    assert any("extract_suspect_long_for_small_score:2" in r for r in result.review_reasons)
    assert "x" * 50 not in transport.prompts[1]


def test_grader_cannot_change_transcription(make_client, session, image, answer_key):
    client, _ = make_client(
        extraction(("1", "paris", 95), ("2", "photosynthesis", 90)),
        grading(
            detail("1", "Paris, capital of France", 2, 2),
            detail("2", "Photosynthesis in plants", 3, 3),
        ),
    )

    result = _pipeline(client).grade(image=image, session=session, answer_key=answer_key)

    assert [d.student_answer for d in result.details] == ["paris", "photosynthesis"]
    assert result.total_score == 5
    assert not result.needs_review


def test_retry_that_returns_sentinel_keeps_placeholder(make_client, session, image, answer_key):
    client, _ = make_client(
        extraction(("1", "Paris", 95)),
        grading(detail("1", "Paris", 2, 2)),
        extraction(("2", UNANSWERED, 0)),
    )

    result = _pipeline(client).grade(image=image, session=session, answer_key=answer_key)

    placeholder = result.detail_for("2")
    assert placeholder == GradingDetail.placeholder("2", 3, student_answer=UNANSWERED)
    assert placeholder.reason == UNRESOLVED_REASON


def test_retry_can_be_skipped(make_client, session, image, answer_key):
    client, transport = make_client(
        extraction(("1", "Paris", 95)),
        grading(detail("1", "Paris", 2, 2)),
    )

    result = _pipeline(client).grade(
        image=image,
        session=session,
        answer_key=answer_key,
        options=GradeOptions(skip_missing_retry=True),
    )

    assert len(transport.calls) == 2
    assert result.detail_for("2").reason == UNRESOLVED_REASON


def test_missing_model_becomes_terminal_result(make_client, session, image, answer_key):
    client, _ = make_client(TransportError("models/test-model is not found", status_code=404))

    result = _pipeline(client).grade(image=image, session=session, answer_key=answer_key)

    assert result.total_score == 0
    assert [d.question_id for d in result.details] == ["1", "2"]
    assert result.needs_review
    assert "test-model" in result.feedback[0]


def test_unparseable_output_becomes_system_error(make_client, session, image, answer_key):
    client, _ = make_client("Sorry, I cannot help with that.")

    result = _pipeline(client).grade(image=image, session=session, answer_key=answer_key)

    assert result.feedback[0] == "System error"
    assert all(d.reason == UNRESOLVED_REASON for d in result.details)


def test_fallback_warning_is_carried_into_review(make_client, image, answer_key):
    from homework_grader.model_router import ModelSession

    session = ModelSession(active_model="fallback", warnings=("All candidate models failed",), fell_back=True)
    client, _ = make_client(
        extraction(("1", "Paris", 95), ("2", "photosynthesis", 90)),
        grading(detail("1", "Paris", 2, 2), detail("2", "photosynthesis", 3, 3)),
    )

    result = _pipeline(client).grade(image=image, session=session, answer_key=answer_key)

    assert "All candidate models failed" in result.review_reasons


def test_regrade_merges_only_requested_questions(make_client, session, image, answer_key):
    previous = GradingResult(
        details=[
            GradingDetail(question_id="1", student_answer="Paris", score=2, max_score=2, is_correct=True),
            GradingDetail(question_id="2", student_answer="photo", score=0, max_score=3),
        ],
        total_score=2,
    )
    client, transport = make_client(
        extraction(("2", "photo-synthesis", 92)),
        grading(detail("2", "photo-synthesis", 1, 3)),
    )

    result = _pipeline(client).regrade(
        image=image,
        session=session,
        previous=previous,
        question_ids=["2"],
        answer_key=answer_key,
    )

    assert result.detail_for("1") == previous.details[0]
    assert result.detail_for("2").student_answer == "photo-synthesis"
    assert result.detail_for("2").score == 3
    assert result.total_score == 5
    assert "A previous attempt failed" in transport.prompts[0]


def test_reports_are_written(tmp_path, answer_key):
    result = GradingResult(
        details=[GradingDetail(question_id="1", student_answer="Paris", score=2, max_score=2, is_correct=True)],
        total_score=2,
    )

    save_exam_report(tmp_path / "s1_report.json", "s1", result)
    save_summary_csv(
        tmp_path / "summary.csv",
        [{"submission_id": "s1", "total_score": "2.00", "max_score": "2.00", "needs_review": False, "item_breakdown": "1:2/2"}],
    )
    save_answer_key(tmp_path / "key.json", answer_key)

    report = json.loads((tmp_path / "s1_report.json").read_text(encoding="utf-8"))
    assert report["submissionId"] == "s1"
    assert report["details"][0]["studentAnswer"] == "Paris"
    with (tmp_path / "summary.csv").open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert rows[0]["item_breakdown"] == "1:2/2"
    assert load_answer_key(tmp_path / "key.json") == answer_key


def test_empty_answer_key_makes_no_model_call(make_client, session, image):
    client, transport = make_client()

    result = _pipeline(client).grade(image=image, session=session, answer_key=AnswerKey())

    assert result.details == []
    assert result.total_score == 0
    assert result.needs_review
    assert transport.calls == []


class DuplicatingEngine(ReconciliationEngine):
    def run(self, run_pass, expected_ids, answer_key=None, allow_retry=True):
        one = GradingDetail(question_id="1", score=2, max_score=2)
        result = GradingResult(details=[one, one.model_copy()], total_score=4)
        return Reconciliation(result=result, attempts=1, unresolved_ids=[])


def test_incomplete_result_is_flagged_not_raised(make_client, session, image, answer_key):
    client, _ = make_client()
    pipeline = GradingPipeline(AnswerExtractor(client), Grader(client), engine=DuplicatingEngine())

    result = pipeline.grade(image=image, session=session, answer_key=answer_key)

    assert result.needs_review
    assert any("completeness check" in reason for reason in result.review_reasons)
