from __future__ import annotations

import json
from typing import Any, Callable, List, Sequence, Tuple

import pytest

from homework_grader.llm_client import LLMClient, Part
from homework_grader.model_router import ModelSession
from homework_grader.schemas import AnswerKey, Question, QuestionType, SubmissionImage


class ScriptedTransport:
    """Replays canned replies in order and records every request."""

    def __init__(self, replies: Sequence[Any] = ()):
        self.replies: List[Any] = list(replies)
        self.calls: List[Tuple[str, List[Part]]] = []

    def send(self, model: str, parts: Sequence[Part]) -> str:
        self.calls.append((model, list(parts)))
        if not self.replies:
            raise AssertionError(f"Unexpected model call #{len(self.calls)}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(model, parts)
        if isinstance(reply, (dict, list)):
            return json.dumps(reply, ensure_ascii=False)
        return reply

    @property
    def prompts(self) -> List[str]:
        return [str(parts[0]) for _, parts in self.calls]


@pytest.fixture
def make_client() -> Callable[..., Tuple[LLMClient, ScriptedTransport]]:
    def factory(*replies: Any) -> Tuple[LLMClient, ScriptedTransport]:
        transport = ScriptedTransport(replies)
        return LLMClient(transport, sleep=lambda _: None), transport

    return factory


@pytest.fixture
def session() -> ModelSession:
    return ModelSession(active_model="test-model", candidates_tried=("test-model",))


@pytest.fixture
def image() -> SubmissionImage:
    return SubmissionImage(data=b"\xff\xd8fake-jpeg", mime_type="image/jpeg")


@pytest.fixture
def answer_key() -> AnswerKey:
    return AnswerKey.from_questions(
        [
            Question(id="1", type=QuestionType.EXACT, max_score=2, answer="Paris"),
            Question(
                id="2",
                type=QuestionType.FUZZY,
                max_score=3,
                reference_answer="photosynthesis",
                acceptable_answers=["photo-synthesis"],
            ),
        ]
    )
