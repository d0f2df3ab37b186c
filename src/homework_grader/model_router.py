from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .errors import GraderError, ModelUnavailable
from .llm_client import LLMClient

logger = logging.getLogger(__name__)

PROBE_PROMPT = "Hi"


@dataclass(frozen=True)
class ModelSession:
    """The model chosen for one grading session; passed explicitly to every pipeline call."""

    active_model: str
    candidates_tried: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    fell_back: bool = False


class ModelRouter:
    def __init__(self, client: LLMClient, candidates: Sequence[str], default_model: Optional[str] = None):
        self.client = client
        self.candidates = list(candidates)
        self.default_model = default_model

    def probe(self) -> ModelSession:
        """Probe candidates in order once; the first non-empty reply wins."""
        tried: List[str] = []
        for model in self.candidates:
            tried.append(model)
            try:
                reply = self.client.generate_text(model=model, parts=[PROBE_PROMPT], max_retries=0)
            except GraderError as e:
                logger.warning("Model probe failed for %s: %s", model, str(e).split(":")[0])
                continue
            if reply.strip():
                logger.info("Using model %s (probe reply %r)", model, reply[:10])
                return ModelSession(active_model=model, candidates_tried=tuple(tried))

        if not self.default_model:
            raise ModelUnavailable(
                "Every candidate model failed the probe and no default model is configured.",
                {"candidates": tried},
            )
        warning = (
            f"All candidate models failed ({', '.join(tried) or 'none configured'}); "
            f"falling back to {self.default_model}."
        )
        logger.warning(warning)
        return ModelSession(
            active_model=self.default_model,
            candidates_tried=tuple(tried),
            warnings=(warning,),
            fell_back=True,
        )
