from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, FrozenSet, Iterator, List, Optional, Sequence, Set

from .errors import GradingInProgress
from .grader import GradeOptions
from .model_router import ModelRouter, ModelSession
from .pipeline import GradingPipeline
from .schemas import AnswerKey
from .store import SubmissionRecord, SubmissionStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class SubmissionLocks:
    """At most one grading run per submission id, across threads."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._in_flight: Set[str] = set()

    @property
    def in_flight(self) -> FrozenSet[str]:
        with self._guard:
            return frozenset(self._in_flight)

    def is_locked(self, submission_id: str) -> bool:
        with self._guard:
            return submission_id in self._in_flight

    @contextmanager
    def hold(self, submission_id: str) -> Iterator[None]:
        with self._guard:
            if submission_id in self._in_flight:
                raise GradingInProgress(
                    f"Submission {submission_id} is already being graded",
                    details={"submission_id": submission_id},
                )
            self._in_flight.add(submission_id)
        try:
            yield
        finally:
            with self._guard:
                self._in_flight.discard(submission_id)


_DEFAULT_LOCKS = SubmissionLocks()


@dataclass
class BatchSummary:
    success_count: int = 0
    fail_count: int = 0
    skipped_ids: List[str] = field(default_factory=list)
    session: Optional[ModelSession] = None


def grade_batch(
    submissions: Sequence[SubmissionRecord],
    store: SubmissionStore,
    pipeline: GradingPipeline,
    router: ModelRouter,
    answer_key: Optional[AnswerKey] = None,
    options: Optional[GradeOptions] = None,
    on_progress: Optional[ProgressCallback] = None,
    inter_call_delay: float = 2.0,
    should_stop: Optional[Callable[[], bool]] = None,
    locks: Optional[SubmissionLocks] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchSummary:
    """Grade `submissions` one after another and write each finished record to `store` once."""
    locks = locks or _DEFAULT_LOCKS
    session = router.probe()
    summary = BatchSummary(session=session)
    total = len(submissions)
    logger.info("Grading %d submission(s) with %s", total, session.active_model)

    for index, record in enumerate(submissions, start=1):
        if should_stop is not None and should_stop():
            logger.info("Batch stopped before submission %d of %d", index, total)
            break
        if on_progress is not None:
            on_progress(index, total)

        if record.image is None:
            logger.warning("Submission %s has no image; skipping", record.id)
            summary.fail_count += 1
            summary.skipped_ids.append(record.id)
            continue

        try:
            with locks.hold(record.id):
                result = pipeline.grade(
                    image=record.image,
                    session=session,
                    answer_key=answer_key,
                    options=options,
                )
                store.update(
                    record.model_copy(
                        update={
                            "status": "graded",
                            "score": result.total_score,
                            "grading_result": result,
                            "graded_at": datetime.now(timezone.utc),
                        }
                    )
                )
        except GradingInProgress as e:
            logger.warning("%s; skipping", e.message)
            summary.skipped_ids.append(record.id)
            continue
        except Exception:
            # One failing submission never stops the batch; the record stays pending.
            logger.exception("Grading submission %s failed", record.id)
            summary.fail_count += 1
        else:
            summary.success_count += 1

        if index < total and inter_call_delay > 0:
            sleep(inter_call_delay)

    logger.info(
        "Batch done: %d graded, %d failed, %d skipped",
        summary.success_count,
        summary.fail_count,
        len(summary.skipped_ids),
    )
    return summary
