"""
Tests for model transports and structured generation.
"""

import pytest
import requests

from homework_grader.config import Settings
from homework_grader.errors import ConfigurationError, SchemaError, TransportError
from homework_grader.llm_client import LLMClient, ProxyTransport
from homework_grader.schemas import ExtractionPayload, SubmissionImage


class FakeResponse:
    def __init__(self, status_code, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text or ""

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append({"url": url, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _ok(text):
    return FakeResponse(200, {"candidates": [{"content": {"parts": [{"text": text}]}}]})


def test_proxy_request_shape():
    session = FakeSession(_ok("hello"))
    transport = ProxyTransport("https://proxy.test/gemini", timeout=30, session=session)
    image = SubmissionImage(data=b"abc", mime_type="image/png")

    assert transport.send("gemini-2.5-flash", ["prompt", image]) == "hello"

    sent = session.requests[0]
    assert sent["timeout"] == 30
    assert sent["json"] == {
        "model": "gemini-2.5-flash",
        "contents": [
            {
                "role": "user",
                "parts": [
                    {"text": "prompt"},
                    {"inlineData": {"mimeType": "image/png", "data": "YWJj"}},
                ],
            }
        ],
    }


def test_proxy_joins_candidate_parts():
    response = FakeResponse(
        200, {"candidates": [{"content": {"parts": [{"text": " {\"a\":"}, {"text": " 1} "}]}}]}
    )
    transport = ProxyTransport("u", session=FakeSession(response))
    assert transport.send("m", ["x"]) == '{"a": 1}'


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"error": {"message": "models/foo is not found"}}, "models/foo is not found"),
        ({"error": "quota exceeded"}, "quota exceeded"),
        (None, "Model request failed (500)"),
    ],
)
def test_proxy_error_messages(payload, message):
    transport = ProxyTransport("u", session=FakeSession(FakeResponse(500, payload)))
    with pytest.raises(TransportError) as exc_info:
        transport.send("m", ["x"])
    assert exc_info.value.message == message
    assert exc_info.value.status_code == 500


def test_proxy_empty_text_is_an_error():
    transport = ProxyTransport("u", session=FakeSession(_ok("   ")))
    with pytest.raises(TransportError, match="empty"):
        transport.send("m", ["x"])


def test_proxy_timeout_becomes_transport_error():
    transport = ProxyTransport(
        "u", timeout=5, session=FakeSession(error=requests.exceptions.Timeout("slow"))
    )
    with pytest.raises(TransportError, match="timed out"):
        transport.send("m", ["x"])


def test_model_missing_detection():
    assert TransportError("x", status_code=404).is_model_missing
    assert TransportError("Model gemini-x not found").is_model_missing
    assert not TransportError("boom", status_code=500).is_model_missing


class FlakyTransport:
    def __init__(self, failures, reply="ok"):
        self.failures = list(failures)
        self.reply = reply
        self.calls = 0

    def send(self, model, parts):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.reply


def test_rate_limit_is_retried_with_backoff():
    waits = []
    transport = FlakyTransport([TransportError("RESOURCE_EXHAUSTED", status_code=429)])
    client = LLMClient(transport, max_retries=2, rate_limit_backoff=10, sleep=waits.append)

    assert client.generate_text(model="m", parts=["x"]) == "ok"
    assert transport.calls == 2
    assert waits == [10]


def test_rate_limit_honours_server_delay():
    waits = []
    transport = FlakyTransport([TransportError("Please retry in 42s", status_code=429)])
    client = LLMClient(transport, rate_limit_backoff=10, sleep=waits.append)

    client.generate_text(model="m", parts=["x"])

    assert waits == [47]


def test_other_errors_are_not_retried():
    transport = FlakyTransport([TransportError("boom", status_code=500)])
    client = LLMClient(transport, sleep=lambda _: None)

    with pytest.raises(TransportError):
        client.generate_text(model="m", parts=["x"])
    assert transport.calls == 1


def test_rate_limit_retries_are_bounded():
    errors = [TransportError("slow down", status_code=429) for _ in range(5)]
    transport = FlakyTransport(errors)
    client = LLMClient(transport, max_retries=2, sleep=lambda _: None)

    with pytest.raises(TransportError):
        client.generate_text(model="m", parts=["x"])
    assert transport.calls == 3


def test_generate_structured_parses_fenced_json(make_client):
    reply = '```json\n{"answers": [{"questionId": 1, "studentAnswer": "B", "confidence": 91}]}\n```'
    client, transport = make_client(reply)

    payload = client.generate_structured(model="m", parts=["prompt"], response_schema=ExtractionPayload)

    assert payload.answers[0].question_id == "1"
    assert payload.answers[0].student_answer == "B"
    # format instructions travel as the last text part
    assert "answers" in transport.calls[0][1][-1]


def test_generate_structured_schema_error(make_client):
    client, _ = make_client("I could not read the page, sorry.")

    with pytest.raises(SchemaError):
        client.generate_structured(model="m", parts=["prompt"], response_schema=ExtractionPayload)


def test_from_settings_requires_a_transport():
    with pytest.raises(ConfigurationError):
        LLMClient.from_settings(Settings(proxy_url=None, gemini_api_key=None))


def test_from_settings_prefers_proxy():
    client = LLMClient.from_settings(Settings(proxy_url="https://proxy.test", gemini_api_key="k"))
    assert isinstance(client.transport, ProxyTransport)
    assert client.transport.timeout == Settings().request_timeout
