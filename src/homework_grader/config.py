from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MODEL_CANDIDATES = ["gemini-3-pro-preview", "gemini-2.5-flash"]
DEFAULT_FALLBACK_MODEL = "gemini-1.5-flash"
DEFAULT_REQUEST_TIMEOUT = 120.0
DEFAULT_BATCH_DELAY = 2.0
DEFAULT_RATE_LIMIT_RETRIES = 2


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    """Runtime settings; call `load_dotenv()` before `from_env()` to pick up a .env file."""

    proxy_url: Optional[str] = None
    gemini_api_key: Optional[str] = None
    model_candidates: List[str] = field(default_factory=lambda: list(DEFAULT_MODEL_CANDIDATES))
    default_model: Optional[str] = DEFAULT_FALLBACK_MODEL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    batch_delay: float = DEFAULT_BATCH_DELAY
    rate_limit_retries: int = DEFAULT_RATE_LIMIT_RETRIES
    domain_hints_path: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        hints_path = env.get("GRADER_DOMAIN_HINTS")
        return cls(
            proxy_url=env.get("GRADER_PROXY_URL") or None,
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            model_candidates=_split_csv(env.get("GRADER_MODEL_CANDIDATES"))
            or list(DEFAULT_MODEL_CANDIDATES),
            default_model=env.get("GRADER_DEFAULT_MODEL", DEFAULT_FALLBACK_MODEL) or None,
            request_timeout=float(env.get("GRADER_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT)),
            batch_delay=float(env.get("GRADER_BATCH_DELAY", DEFAULT_BATCH_DELAY)),
            rate_limit_retries=int(env.get("GRADER_RATE_LIMIT_RETRIES", DEFAULT_RATE_LIMIT_RETRIES)),
            domain_hints_path=Path(hints_path) if hints_path else None,
        )


@dataclass
class DomainHint:
    grading: str = ""
    extraction: str = ""
    answer_key: str = ""


class DomainHints:
    """Subject-domain hint table, loaded once and looked up by the caller's domain option."""

    def __init__(self, hints: Dict[str, DomainHint], aliases: Optional[Dict[str, str]] = None):
        self._hints = hints
        self._aliases = aliases or {}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "DomainHints":
        if path is None:
            text = resources.files("homework_grader").joinpath("data/domain_hints.json").read_text(
                encoding="utf-8"
            )
        else:
            text = Path(path).read_text(encoding="utf-8")
        payload = json.loads(text)
        domains = payload.get("domains", {})
        if not isinstance(domains, dict):
            raise ValueError("Domain hint file must contain object field `domains`.")
        hints = {
            str(name): DomainHint(
                grading=str(entry.get("grading", "")).strip(),
                extraction=str(entry.get("extraction", "")).strip(),
                answer_key=str(entry.get("answer_key", "")).strip(),
            )
            for name, entry in domains.items()
        }
        aliases = {str(k): str(v) for k, v in payload.get("aliases", {}).items()}
        logger.debug("Loaded %d domain hints", len(hints))
        return cls(hints, aliases)

    @classmethod
    def empty(cls) -> "DomainHints":
        return cls({})

    def resolve(self, domain: Optional[str]) -> Optional[str]:
        if not domain:
            return None
        name = self._aliases.get(domain, domain)
        return name if name in self._hints else None

    def get(self, domain: Optional[str]) -> Optional[DomainHint]:
        name = self.resolve(domain)
        return self._hints[name] if name else None

    def grading(self, domain: Optional[str]) -> str:
        hint = self.get(domain)
        return hint.grading if hint else ""

    def extraction(self, domain: Optional[str]) -> str:
        hint = self.get(domain)
        return hint.extraction if hint else ""

    def answer_key(self, domain: Optional[str]) -> str:
        hint = self.get(domain)
        return hint.answer_key if hint else ""

    @property
    def domains(self) -> List[str]:
        return sorted(self._hints)
