from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Literal, Optional, Protocol

from pydantic import Field

from .errors import GraderError
from .schemas import CamelModel, GradingResult, SubmissionImage

logger = logging.getLogger(__name__)

SubmissionStatus = Literal["pending", "graded"]


class SubmissionRecord(CamelModel):
    id: str
    assignment_id: str = ""
    student_id: str = ""
    status: SubmissionStatus = "pending"
    image: Optional[SubmissionImage] = None
    score: Optional[float] = None
    grading_result: Optional[GradingResult] = None
    graded_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class SubmissionStore(Protocol):
    def get(self, submission_id: str) -> Optional[SubmissionRecord]: ...

    def list(self, assignment_id: Optional[str] = None) -> List[SubmissionRecord]: ...

    def add(self, record: SubmissionRecord) -> None: ...

    def update(self, record: SubmissionRecord) -> SubmissionRecord: ...


def _keep_image(existing: Optional[SubmissionRecord], record: SubmissionRecord) -> SubmissionRecord:
    # An update never drops the stored image.
    if existing is not None and record.image is None and existing.image is not None:
        return record.model_copy(update={"image": existing.image})
    return record


class InMemorySubmissionStore:
    def __init__(self, records: Optional[List[SubmissionRecord]] = None):
        self._records: Dict[str, SubmissionRecord] = {}
        self._lock = threading.Lock()
        for record in records or []:
            self.add(record)

    def get(self, submission_id: str) -> Optional[SubmissionRecord]:
        with self._lock:
            return self._records.get(submission_id)

    def list(self, assignment_id: Optional[str] = None) -> List[SubmissionRecord]:
        with self._lock:
            records = list(self._records.values())
        if assignment_id is None:
            return records
        return [r for r in records if r.assignment_id == assignment_id]

    def add(self, record: SubmissionRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def update(self, record: SubmissionRecord) -> SubmissionRecord:
        with self._lock:
            existing = self._records.get(record.id)
            if existing is None:
                raise GraderError(f"Unknown submission {record.id}")
            stored = _keep_image(existing, record)
            self._records[record.id] = stored
            return stored


class FileSubmissionStore:
    """One JSON file per submission under `root`; images are stored inline as base64."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, submission_id: str) -> Path:
        return self.root / f"{submission_id}.json"

    def _read(self, path: Path) -> Optional[SubmissionRecord]:
        if not path.exists():
            return None
        return SubmissionRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, record: SubmissionRecord) -> None:
        path = self._path(record.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(record.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        tmp.replace(path)

    def get(self, submission_id: str) -> Optional[SubmissionRecord]:
        with self._lock:
            return self._read(self._path(submission_id))

    def list(self, assignment_id: Optional[str] = None) -> List[SubmissionRecord]:
        records: List[SubmissionRecord] = []
        with self._lock:
            for path in sorted(self.root.glob("*.json")):
                record = self._read(path)
                if record is None:
                    continue
                if assignment_id is None or record.assignment_id == assignment_id:
                    records.append(record)
        return records

    def add(self, record: SubmissionRecord) -> None:
        with self._lock:
            self._write(record)

    def update(self, record: SubmissionRecord) -> SubmissionRecord:
        with self._lock:
            existing = self._read(self._path(record.id))
            if existing is None:
                raise GraderError(f"Unknown submission {record.id}")
            stored = _keep_image(existing, record)
            self._write(stored)
            logger.debug("Updated submission %s (status=%s)", record.id, stored.status)
            return stored
