from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Type, TypeVar, Union

import requests
from google import genai
from google.genai import types
from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import PydanticOutputParser
from pydantic import BaseModel

from .config import Settings
from .errors import ConfigurationError, SchemaError, TransportError
from .schemas import SubmissionImage

logger = logging.getLogger(__name__)

Part = Union[str, SubmissionImage]
ModelT = TypeVar("ModelT", bound=BaseModel)


class ProxyTransport:
    """POSTs Gemini-shaped requests to a server-side proxy that holds the API key."""

    def __init__(
        self,
        url: str,
        timeout: float = 120.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    @staticmethod
    def build_body(model: str, parts: Sequence[Part]) -> Dict[str, Any]:
        wire_parts: List[Dict[str, Any]] = []
        for part in parts:
            if isinstance(part, SubmissionImage):
                wire_parts.append(
                    {"inlineData": {"mimeType": part.mime_type, "data": part.to_base64()}}
                )
            else:
                wire_parts.append({"text": part})
        return {"model": model, "contents": [{"role": "user", "parts": wire_parts}]}

    def send(self, model: str, parts: Sequence[Part]) -> str:
        body = self.build_body(model, parts)
        try:
            response = self._session.post(self.url, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransportError(f"Model request timed out after {self.timeout:g}s") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Model proxy unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.ok:
            error = data.get("error")
            if isinstance(error, dict):
                message = error.get("message")
            else:
                message = error
            raise TransportError(
                str(message or f"Model request failed ({response.status_code})"),
                status_code=response.status_code,
            )

        text = _join_candidate_text(data)
        if not text:
            raise TransportError("Model response empty", status_code=response.status_code)
        return text


class GeminiTransport:
    """Direct Gemini access through google-genai, for setups without a proxy."""

    def __init__(self, api_key: str, timeout: float = 120.0):
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is required for the direct Gemini transport.")
        self._client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )

    def send(self, model: str, parts: Sequence[Part]) -> str:
        sdk_parts = [
            types.Part.from_bytes(data=part.data, mime_type=part.mime_type)
            if isinstance(part, SubmissionImage)
            else types.Part.from_text(text=part)
            for part in parts
        ]
        try:
            response = self._client.models.generate_content(
                model=model,
                contents=[types.Content(role="user", parts=sdk_parts)],
                config=types.GenerateContentConfig(temperature=0.0),
            )
        except Exception as e:
            raise TransportError(
                f"Gemini generation failed: {e}", status_code=getattr(e, "code", None)
            ) from e
        text = (response.text or "").strip()
        if not text:
            raise TransportError("Model response empty")
        return text


class LLMClient:
    """Sends prompts through a transport and parses the replies into pydantic schemas."""

    def __init__(
        self,
        transport,
        max_retries: int = 2,
        rate_limit_backoff: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.max_retries = max_retries
        self.rate_limit_backoff = rate_limit_backoff
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        if settings.proxy_url:
            transport = ProxyTransport(settings.proxy_url, timeout=settings.request_timeout)
        elif settings.gemini_api_key:
            transport = GeminiTransport(settings.gemini_api_key, timeout=settings.request_timeout)
        else:
            raise ConfigurationError("Set GRADER_PROXY_URL or GEMINI_API_KEY.")
        return cls(transport, max_retries=settings.rate_limit_retries)

    def generate_text(
        self,
        *,
        model: str,
        parts: Sequence[Part],
        max_retries: Optional[int] = None,
    ) -> str:
        retries = self.max_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            try:
                return self.transport.send(model, parts)
            except TransportError as e:
                if not e.is_rate_limited or attempt >= retries:
                    raise
                # 60s, 120s, 240s unless the server names a longer delay
                wait_time = self.rate_limit_backoff * (2 ** attempt)
                delay_match = re.search(r"retry\s+in\s+([\d.]+)s", e.message, re.IGNORECASE)
                if delay_match:
                    wait_time = max(float(delay_match.group(1)) + 5, wait_time)
                logger.warning(
                    "Rate limited on %s (attempt %d/%d), waiting %.0fs",
                    model,
                    attempt + 1,
                    retries + 1,
                    wait_time,
                )
                self._sleep(wait_time)
                attempt += 1

    def generate_structured(
        self,
        *,
        model: str,
        parts: Sequence[Part],
        response_schema: Type[ModelT],
    ) -> ModelT:
        """Append the schema's format instructions and parse the reply into `response_schema`."""
        parser = PydanticOutputParser(pydantic_object=response_schema)
        text = self.generate_text(model=model, parts=[*parts, parser.get_format_instructions()])
        try:
            return parser.parse(text)
        except OutputParserException as e:
            logger.debug("Unparseable model output: %s", text[:500])
            raise SchemaError(
                f"Model output does not match {response_schema.__name__}",
                {"error": str(e).splitlines()[0] if str(e) else ""},
            ) from e


def _join_candidate_text(data: Dict[str, Any]) -> str:
    chunks: List[str] = []
    for candidate in data.get("candidates") or []:
        content = (candidate or {}).get("content") or {}
        for part in content.get("parts") or []:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                chunks.append(part["text"])
    return "".join(chunks).strip()
