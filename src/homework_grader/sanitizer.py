"""Local, deterministic screening of stage-1 transcriptions.

Vision models sometimes "improve" handwriting into a fluent model answer
instead of copying it. These rules catch transcriptions that read too well
for what the page could hold and downgrade them to ``unrecognized`` so they
cannot earn credit. No model call is involved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import TamperDetected
from .schemas import UNRECOGNIZED, AnswerKey, ExtractedAnswer, Question

SUSPECT_REWRITE = "extract_suspect_rewrite"
SUSPECT_NARRATIVE = "extract_suspect_narrative"
SUSPECT_STANDARD_ANSWER = "extract_suspect_standard_answer"
SUSPECT_LONG_FOR_SMALL_SCORE = "extract_suspect_long_for_small_score"

NARRATIVE_LEXICON = re.compile(
    r"\b(?:because|therefore|however|moreover|furthermore|in other words|for example"
    r"|for instance|which means|that is to say|as a result|in addition|in conclusion)\b"
    r"|因為|所以|因此|然而|而且|例如|也就是|換句話說|此外|總之|由此可知",
    re.IGNORECASE,
)
PUNCTUATION = re.compile(r"[，。、；：！？,.;:!?]")


@dataclass
class SanitizeResult:
    answers: List[ExtractedAnswer]
    tags: List[str] = field(default_factory=list)

    @property
    def downgraded_ids(self) -> List[str]:
        return list(dict.fromkeys(tag.split(":", 1)[1] for tag in self.tags))

    def raise_for_tamper(self) -> None:
        if self.tags:
            raise TamperDetected(
                f"{len(self.tags)} transcription(s) look rewritten: {', '.join(self.downgraded_ids)}",
                tags=list(self.tags),
            )


Rule = Callable[[str, float, Optional[Question]], bool]


def _rewrite(text: str, confidence: float, question: Optional[Question]) -> bool:
    return len(text) > 40 and confidence < 85


def _narrative(text: str, confidence: float, question: Optional[Question]) -> bool:
    return confidence < 90 and NARRATIVE_LEXICON.search(text) is not None


def _standard_answer(text: str, confidence: float, question: Optional[Question]) -> bool:
    return len(PUNCTUATION.findall(text)) >= 2 and len(text) > 30 and confidence < 90


def _long_for_small_score(text: str, confidence: float, question: Optional[Question]) -> bool:
    return question is not None and question.max_score <= 5 and len(text) >= 50


RULES: Sequence[Tuple[str, Rule]] = (
    (SUSPECT_REWRITE, _rewrite),
    (SUSPECT_NARRATIVE, _narrative),
    (SUSPECT_STANDARD_ANSWER, _standard_answer),
    (SUSPECT_LONG_FOR_SMALL_SCORE, _long_for_small_score),
)


def triggered_rules(answer: ExtractedAnswer, question: Optional[Question] = None) -> List[str]:
    """Tags of every rule the answer trips, in rule order."""
    if answer.is_sentinel:
        return []
    text = answer.student_answer.strip()
    return [tag for tag, rule in RULES if rule(text, answer.confidence, question)]


def sanitize_answers(
    answers: Sequence[ExtractedAnswer],
    answer_key: Optional[AnswerKey] = None,
) -> SanitizeResult:
    """Downgrade suspicious transcriptions in place of discarding them. Idempotent."""
    sanitized: List[ExtractedAnswer] = []
    tags: List[str] = []
    for answer in answers:
        question = answer_key.get(answer.question_id) if answer_key else None
        fired = triggered_rules(answer, question)
        if not fired:
            sanitized.append(answer.model_copy())
            continue
        tags.extend(f"{tag}:{answer.question_id}" for tag in fired)
        sanitized.append(
            answer.model_copy(update={"student_answer": UNRECOGNIZED, "confidence": 0.0})
        )
    return SanitizeResult(answers=sanitized, tags=tags)
