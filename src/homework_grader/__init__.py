"""Two-stage homework grading: transcribe, sanitize, score, reconcile."""

from .agents import AnswerExtractor, AnswerKeyExtractor
from .batch import BatchSummary, SubmissionLocks, grade_batch
from .config import DomainHints, Settings
from .grader import GradeOptions, Grader, RegradeScope
from .llm_client import LLMClient
from .model_router import ModelRouter, ModelSession
from .pipeline import GradingPipeline
from .reconciliation import ReconciliationEngine
from .sanitizer import sanitize_answers
from .schemas import AnswerKey, ExtractedAnswer, GradingDetail, GradingResult, Question

__all__ = [
    "AnswerExtractor",
    "AnswerKey",
    "AnswerKeyExtractor",
    "BatchSummary",
    "DomainHints",
    "ExtractedAnswer",
    "GradeOptions",
    "Grader",
    "GradingDetail",
    "GradingPipeline",
    "GradingResult",
    "LLMClient",
    "ModelRouter",
    "ModelSession",
    "Question",
    "ReconciliationEngine",
    "RegradeScope",
    "Settings",
    "SubmissionLocks",
    "grade_batch",
    "sanitize_answers",
]
