"""
Batch job records and their status state machine.

    queued -> processing -> completed
                         -> failed

Transitions only move forward; completed and failed are terminal and the
record is immutable once it reaches either.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class InvalidStateTransitionError(Exception):
    """Job status change would move backwards or leave a terminal state."""
    pass


class JobNotFoundError(Exception):
    """No job with the requested id."""
    pass


@dataclass
class BatchFile:
    """One submitted file."""
    filename: str
    path: Path
    size: int = 0

    @classmethod
    def from_path(cls, path) -> 'BatchFile':
        path = Path(path)
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        return cls(filename=path.name, path=path, size=size)


@dataclass
class BatchJob:
    """
    A submitted batch and its progress.

    Mutated only by BatchJobManager while holding its lock; readers get
    snapshots from to_dict().
    """
    job_id: str
    files: List[BatchFile]
    continue_on_error: bool = True
    status: JobStatus = JobStatus.QUEUED
    processed: int = 0
    errors: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @staticmethod
    def new_id() -> str:
        return f"job-{uuid.uuid4().hex}"

    @property
    def total(self) -> int:
        return len(self.files)

    def transition(self, status: JobStatus) -> None:
        """
        Move to a new status, stamping start/completion times.

        Raises:
            InvalidStateTransitionError: If the move is not allowed
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Job {self.job_id}: cannot transition {self.status.value} -> {status.value}"
            )

        now = datetime.now(timezone.utc)
        if status == JobStatus.PROCESSING:
            self.started_at = now
        elif status.is_terminal:
            self.completed_at = now
        self.status = status

    def record(self, error: Optional[str] = None) -> None:
        """
        Count one processed file, with its error if it failed.

        Raises:
            InvalidStateTransitionError: If the job is not processing
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidStateTransitionError(
                f"Job {self.job_id}: cannot record progress while {self.status.value}"
            )
        self.processed += 1
        if error:
            self.errors.append(error)

    def abort(self, error: str) -> None:
        """
        Fail the job, recording why; the file being processed is not counted.

        Raises:
            InvalidStateTransitionError: If the job is already terminal
        """
        if self.status.is_terminal:
            raise InvalidStateTransitionError(
                f"Job {self.job_id}: cannot fail a job that is already {self.status.value}"
            )
        self.errors.append(error)
        self.transition(JobStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        """Status snapshot; optional keys are omitted when empty."""
        data: Dict[str, Any] = {
            'jobId': self.job_id,
            'status': self.status.value,
            'progress': {'processed': self.processed, 'total': self.total},
        }
        if self.errors:
            data['errors'] = list(self.errors)
        data['createdAt'] = self.created_at.isoformat()
        if self.started_at:
            data['startedAt'] = self.started_at.isoformat()
        if self.completed_at:
            data['completedAt'] = self.completed_at.isoformat()
        return data
