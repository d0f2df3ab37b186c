from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import Field, ValidationError

from .schemas import CamelModel, QuestionId

logger = logging.getLogger(__name__)


class ExtractionCorrection(CamelModel):
    """A teacher's fix of a transcription the model got wrong."""

    assignment_id: str
    student_id: str
    submission_id: str
    question_id: QuestionId
    ai_student_answer: str
    corrected_student_answer: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    domain: Optional[str] = None

    def as_example(self) -> str:
        ai_answer = self.ai_student_answer or "-"
        return f'- question {self.question_id}: model read "{ai_answer}", student wrote "{self.corrected_student_answer}"'


class CorrectionLog:
    """Append-only JSON-lines log of transcription corrections."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def record(self, correction: ExtractionCorrection) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(correction.to_json_dict(), ensure_ascii=False) + "\n")

    def recent(self, domain: Optional[str] = None, limit: int = 5) -> List[ExtractionCorrection]:
        """Newest corrections first; an unreadable log yields nothing."""
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            if self.path.exists():
                logger.warning("Could not read correction log %s: %s", self.path, e)
            return []

        corrections: List[ExtractionCorrection] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                corrections.append(ExtractionCorrection.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping malformed correction entry in %s", self.path)
        if domain:
            corrections = [c for c in corrections if c.domain == domain]
        corrections.sort(key=lambda c: c.created_at, reverse=True)
        return corrections[:limit]

    def examples(self, domain: Optional[str] = None, limit: int = 5) -> List[str]:
        return [c.as_example() for c in self.recent(domain, limit)]
