"""Exception hierarchy for the grading pipeline."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class GraderError(Exception):
    """Base class for every error raised by the grading pipeline."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(GraderError):
    """Raised when no usable model transport is configured."""


class TransportError(GraderError):
    """Network or HTTP failure while reaching the model endpoint."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429 or "RESOURCE_EXHAUSTED" in self.message

    @property
    def is_model_missing(self) -> bool:
        return self.status_code == 404 or "not found" in self.message.lower()


class ModelUnavailable(GraderError):
    """Every candidate model failed the probe and no default is configured."""


class SchemaError(GraderError):
    """Model output could not be parsed into the expected JSON shape."""


class CompletenessViolation(GraderError):
    """A grading result does not cover the answer key exactly once per id."""

    def __init__(
        self,
        message: str,
        missing_ids: Optional[List[str]] = None,
        duplicate_ids: Optional[List[str]] = None,
    ):
        super().__init__(
            message,
            {"missing_ids": missing_ids or [], "duplicate_ids": duplicate_ids or []},
        )
        self.missing_ids = missing_ids or []
        self.duplicate_ids = duplicate_ids or []


class TamperDetected(GraderError):
    """A transcription looked rewritten rather than copied from the page."""

    def __init__(self, message: str, tags: Optional[List[str]] = None):
        super().__init__(message, {"tags": tags or []})
        self.tags = tags or []


class GradingInProgress(GraderError):
    """The submission is already being graded by another invocation."""
