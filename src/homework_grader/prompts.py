from __future__ import annotations

import json
from typing import Iterable, List, Optional, Sequence

from .schemas import AnswerKey, ExtractedAnswer, GradingDetail, QuestionType


ANSWER_KEY_PROMPT = """You are reading a reference answer sheet for a homework assignment.
Extract a machine-gradable answer key from the image. Return JSON only (no markdown).

Question types:
Type 1 (single answer): exact match, the answer is unique and cannot be replaced.
  e.g. true/false (O/X), multiple choice (A/B/C), a computed result (2+3=5).
Type 2 (several acceptable answers): the core answer is fixed but may be phrased differently.
  Put the canonical form in `answer` or `referenceAnswer` and the variants in `acceptableAnswers`.
  For sound-based or look-alike word-building items record the required reading or radical in `referenceAnswer`.
Type 3 (scored on performance): open or multi-step questions.
  Calculations use `rubricDimensions` (usually working and final answer);
  essays with explicit key points use `rubricDimensions`;
  purely evaluative items use `rubric.levels` with 4 levels (excellent / good / fair / needs work).

Rules:
- Use the printed question numbers; otherwise number 1, 2, 3... without gaps.
- Use the printed scores; otherwise estimate (true/false or choice 2-5, short answer 5-8, essay 8-15).
- totalScore is the sum of every maxScore.
- If nothing can be read, return {"questions": [], "totalScore": 0}."""


EXTRACTION_PROMPT = """You are the transcription stage of a homework-grading pipeline.
Your only job is to copy what the student wrote for each question. You never grade.

Transcription rules (mechanical copying, like an OCR engine):
- Reproduce the handwriting literally, including wrong characters and misspellings.
- Never infer missing characters, never correct, never complete, never substitute synonyms, never summarize.
- If only part of an answer is written, output only the visible part.
- A single character you cannot read is written as [?], e.g. "photo[?]ynthesis".
- Meaningless marks such as ??? are copied as they are.

Blank and illegible answers:
- No handwriting in the answer area: output "unanswered".
- Handwriting present but impossible to read: output "unrecognized".
- Never generate content for a blank answer.

Confidence (0-100) reflects only how certain the transcription is, never whether the answer is right:
- 100: one reading only. 80-99: minor noise. 60-79: two or more candidate readings. 0-59: guessing.
- A clearly written wrong answer still gets high confidence."""


GRADING_PROMPT = """You are a careful, fair teacher scoring a student's paper homework.
The student's answers were already transcribed by a separate stage and are given below.
Judge correctness from the question text and the answer key, not from general knowledge.

Hard rules:
- Never rewrite, correct, complete or summarize studentAnswer. Echo it exactly as given.
  Anything you would like to fix or summarize belongs in reason, mistakes, weaknesses or suggestions.
- Output one entry in `details` for every question listed under "Answers to grade", and no others.
- score must be between 0 and maxScore.

Tiered scoring:
- Type 1 (exact): compare against `answer`; only symbol variants and whitespace are tolerated.
  Full marks or 0, never partial credit.
- Type 2 (fuzzy): compare against `answer` and `acceptableAnswers`. Exact or accepted synonym: full marks
  (matchingDetails.matchType "exact" or "synonym"). Correct but incomplete keywords: partial credit
  (matchType "keyword"). Otherwise 0. If referenceAnswer names a required reading, a word with the wrong
  reading scores 0 even if it is written correctly.
- Type 3 (rubric): score each entry of `rubricDimensions` separately and report them in rubricScores;
  the question score is their sum. Without dimensions use the 4-level scale in `rubric.levels`
  (excellent / good / fair / needs work).

Also report mistakes (id, question, reason), weaknesses (concepts) and suggestions."""


KEYLESS_GRADING_SECTION = """No answer key is available. Be conservative:
- Give credit only when the answer is unambiguously correct from the question text on the page.
- Estimate maxScore per question from the sheet; explain every uncertainty in reason."""


STRICT_SECTION = """Strict mode:
- If the question, the handwriting or the answer is unclear, give no credit and say why in reason.
- Do not guess or fill in; judge only from the question text and the answer key.
- Incomplete answers or answers missing a key term or value are wrong."""


def format_prior_weight_hint(prior_weight_types: Optional[Sequence[int]]) -> str:
    if not prior_weight_types:
        return ""
    names = {
        QuestionType.EXACT: "Type 1 (single answer)",
        QuestionType.FUZZY: "Type 2 (several acceptable answers)",
        QuestionType.RUBRIC: "Type 3 (scored on performance)",
    }
    ranks = ["first", "second", "last"]
    ordered = ", ".join(
        f"{ranks[min(i, 2)]}: {names[QuestionType(t)]}" for i, t in enumerate(prior_weight_types)
    )
    return (
        "Teacher's preferred question types for this assignment, in priority order: "
        f"{ordered}.\n"
        "Follow this order unless there is strong evidence against it; when you diverge set "
        '"aiDivergedFromPrior": true and "aiOriginalDetection" to the type you detected.'
    )


def build_answer_key_prompt(
    domain_hint: str = "",
    domain: Optional[str] = None,
    prior_weight_types: Optional[Sequence[int]] = None,
) -> str:
    sections = [ANSWER_KEY_PROMPT, format_prior_weight_hint(prior_weight_types)]
    if domain_hint:
        sections.append(f"Hints for {domain}:\n{domain_hint}")
    return "\n\n".join(s for s in sections if s)


def build_reanalyze_section(question_ids: Sequence[str]) -> str:
    return (
        f"Re-analysis mode: analyze ONLY these questions again: {', '.join(question_ids)} "
        f"({len(question_ids)} in total).\n"
        "- Output every one of them, even if it is unreadable; then say so in referenceAnswer.\n"
        "- Ignore every other question on the sheet."
    )


def build_extraction_prompt(
    required_ids: Optional[Sequence[str]],
    domain_hint: str = "",
    domain: Optional[str] = None,
    correction_examples: Iterable[str] = (),
    prior_attempt: Optional[Sequence[GradingDetail]] = None,
) -> str:
    sections: List[str] = [EXTRACTION_PROMPT]
    if required_ids:
        sections.append(
            f"Transcribe exactly these questions: {', '.join(required_ids)} "
            f"({len(required_ids)} in total). Output one entry for each, even when blank."
        )
    else:
        sections.append("Transcribe every question you can find, numbered as printed on the sheet.")
    if domain_hint:
        sections.append(f"Transcription notes for {domain}:\n{domain_hint}")
    examples = list(correction_examples)
    if examples:
        sections.append("Recent transcription mistakes corrected by the teacher:\n" + "\n".join(examples))
    if prior_attempt:
        lines = "\n".join(f"- {d.question_id}: {d.student_answer}" for d in prior_attempt)
        sections.append(
            "A previous attempt failed to read these questions; its output is known to be wrong:\n"
            f"{lines}\n"
            "Use it only to locate the questions. Transcribe again from the image; do not copy or polish it."
        )
    return "\n\n".join(sections)


def build_grading_prompt(
    answers: Sequence[ExtractedAnswer],
    answer_key: Optional[AnswerKey],
    domain_hint: str = "",
    domain: Optional[str] = None,
    strict: bool = False,
    regrade_ids: Optional[Sequence[str]] = None,
    previous_details: Optional[Sequence[GradingDetail]] = None,
) -> str:
    sections: List[str] = [GRADING_PROMPT]
    if answer_key is not None:
        wanted = {a.question_id for a in answers}
        key_subset = [q.to_json_dict() for q in answer_key.questions if q.id in wanted]
        sections.append("Answer key (JSON):\n" + json.dumps(key_subset, ensure_ascii=False))
    else:
        sections.append(KEYLESS_GRADING_SECTION)
    if domain_hint:
        sections.append(f"Grading notes for {domain}:\n{domain_hint}")
    if regrade_ids:
        section = (
            f"Regrade mode: grade only {', '.join(regrade_ids)}; every other question stays as it is."
        )
        if previous_details:
            previous = [d.to_json_dict() for d in previous_details if d.question_id in regrade_ids]
            section += (
                "\nThe previous attempt produced (known to be wrong, use only to locate questions):\n"
                + json.dumps(previous, ensure_ascii=False)
            )
        sections.append(section)
    if strict:
        sections.append(STRICT_SECTION)
    payload = [
        {"questionId": a.question_id, "studentAnswer": a.student_answer, "confidence": a.confidence}
        for a in answers
    ]
    sections.append("Answers to grade (JSON):\n" + json.dumps(payload, ensure_ascii=False, indent=2))
    return "\n\n".join(sections)
