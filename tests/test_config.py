"""
Tests for settings and domain hints.
"""

import json

from homework_grader.config import DEFAULT_MODEL_CANDIDATES, DomainHints, Settings


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("GRADER_PROXY_URL", "https://proxy.test/generate")
    monkeypatch.setenv("GRADER_MODEL_CANDIDATES", "model-a, model-b,")
    monkeypatch.setenv("GRADER_REQUEST_TIMEOUT", "30")
    monkeypatch.setenv("GRADER_BATCH_DELAY", "0.5")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    settings = Settings.from_env()

    assert settings.proxy_url == "https://proxy.test/generate"
    assert settings.gemini_api_key is None
    assert settings.model_candidates == ["model-a", "model-b"]
    assert settings.request_timeout == 30
    assert settings.batch_delay == 0.5


def test_settings_defaults(monkeypatch):
    for name in ("GRADER_PROXY_URL", "GRADER_MODEL_CANDIDATES", "GRADER_REQUEST_TIMEOUT", "GRADER_DEFAULT_MODEL"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.model_candidates == DEFAULT_MODEL_CANDIDATES
    assert settings.request_timeout == 120
    assert settings.default_model


def test_bundled_hints_resolve_aliases():
    hints = DomainHints.load()

    assert "math" in hints.domains
    assert hints.resolve("數學") == "math"
    assert hints.grading("數學") == hints.grading("math")
    assert hints.grading("math")


def test_unknown_or_missing_domain_has_no_hint():
    hints = DomainHints.load()

    assert hints.grading(None) == ""
    assert hints.extraction("astrology") == ""
    assert DomainHints.empty().answer_key("math") == ""


def test_hints_load_from_path(tmp_path):
    path = tmp_path / "hints.json"
    path.write_text(
        json.dumps({"domains": {"music": {"grading": "Accept solfege names."}}, "aliases": {"音樂": "music"}}),
        encoding="utf-8",
    )

    hints = DomainHints.load(path)

    assert hints.grading("音樂") == "Accept solfege names."
    assert hints.extraction("music") == ""
