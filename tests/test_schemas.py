"""
Tests for answer-key and result models.
"""

import pytest
from pydantic import ValidationError

from homework_grader.schemas import (
    UNANSWERED,
    UNRECOGNIZED,
    UNRESOLVED_REASON,
    AnswerKey,
    ExtractedAnswer,
    GradingDetail,
    GradingResult,
    Mistake,
    Question,
    QuestionType,
    SubmissionImage,
    canonical_answer,
    is_sentinel,
)


def test_answer_key_fills_total():
    key = AnswerKey.from_questions(
        [
            Question(id="1", type=1, max_score=2, answer="A"),
            Question(id="2", type=2, max_score=3, reference_answer="B"),
        ]
    )
    assert key.total_score == 5
    assert key.question_ids == ["1", "2"]


def test_answer_key_rejects_bad_total():
    with pytest.raises(ValidationError):
        AnswerKey.model_validate(
            {"questions": [{"id": "1", "type": 1, "maxScore": 2, "answer": "A"}], "totalScore": 9}
        )


def test_answer_key_rejects_duplicate_ids():
    with pytest.raises(ValidationError):
        AnswerKey.from_questions(
            [
                Question(id="1", type=1, max_score=1, answer="A"),
                Question(id="1", type=1, max_score=1, answer="B"),
            ]
        )


def test_question_accepts_model_shaped_json():
    question = Question.model_validate(
        {
            "id": 3,
            "type": "3",
            "maxScore": 10,
            "referenceAnswer": "explain",
            "rubricsDimensions": [{"name": "clarity", "maxScore": 5}],
            "acceptableAnswers": None,
        }
    )
    assert question.id == "3"
    assert question.type is QuestionType.RUBRIC
    assert question.rubric_dimensions[0].name == "clarity"
    assert question.acceptable_answers == []
    assert "rubricDimensions" in question.to_json_dict()


def test_question_requires_positive_max_score():
    with pytest.raises(ValidationError):
        Question(id="1", type=1, max_score=0, answer="A")


def test_sentinel_helpers():
    assert canonical_answer("") == UNANSWERED
    assert canonical_answer("   ") == UNANSWERED
    assert canonical_answer("未作答") == UNANSWERED
    assert canonical_answer("無法辨識") == UNRECOGNIZED
    assert canonical_answer("42") == "42"
    assert is_sentinel(UNRECOGNIZED)
    assert not is_sentinel("unanswered question")


def test_extracted_answer_clamps_confidence():
    assert ExtractedAnswer(question_id="1", student_answer="x", confidence=150).confidence == 100
    assert ExtractedAnswer(question_id="1", student_answer="x", confidence="n/a").confidence == 0
    assert ExtractedAnswer(question_id="1", student_answer=None).student_answer == ""


def test_placeholder_detail():
    detail = GradingDetail.placeholder("4", 5)
    assert detail.score == 0
    assert detail.is_correct is False
    assert detail.student_answer == UNRECOGNIZED
    assert detail.reason == UNRESOLVED_REASON


def test_merge_regrade_only_touches_requested_ids():
    previous = GradingResult(
        details=[
            GradingDetail(question_id="1", student_answer="a", score=1, max_score=1, is_correct=True),
            GradingDetail(question_id="2", student_answer="b", score=0, max_score=2),
        ]
    )
    previous.recompute_total()
    regraded = GradingResult(
        details=[
            GradingDetail(question_id="1", student_answer="zzz", score=0, max_score=1),
            GradingDetail(question_id="2", student_answer="b", score=2, max_score=2, is_correct=True),
        ]
    )

    merged = previous.merge_regrade(regraded, ["2"])

    assert merged.detail_for("1").student_answer == "a"
    assert merged.detail_for("2").score == 2
    assert merged.total_score == 3
    assert previous.total_score == 1


def test_merge_regrade_replaces_mistakes_for_regraded_ids():
    previous = GradingResult(
        details=[
            GradingDetail(question_id="1", score=0, max_score=1),
            GradingDetail(question_id="2", score=0, max_score=2),
        ],
        mistakes=[Mistake(id="1", reason="wrong city"), Mistake(id="2", reason="misspelled")],
    )
    regraded = GradingResult(
        details=[GradingDetail(question_id="2", score=2, max_score=2, is_correct=True)],
        mistakes=[Mistake(id="1", reason="stale"), Mistake(id="2", reason="units missing")],
    )

    merged = previous.merge_regrade(regraded, ["2"])

    assert [(m.id, m.reason) for m in merged.mistakes] == [("1", "wrong city"), ("2", "units missing")]


def test_add_review_reason_dedupes():
    result = GradingResult()
    result.add_review_reason("check q1")
    result.add_review_reason("check q1")
    assert result.needs_review
    assert result.review_reasons == ["check q1"]


def test_submission_image_base64_round_trip():
    image = SubmissionImage(data=b"\x00\x01binary", mime_type="image/png")
    restored = SubmissionImage.model_validate_json(image.model_dump_json())
    assert restored == image
    assert image.to_base64() == "AAFiaW5hcnk="
