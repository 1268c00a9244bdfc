"""
Job Models

Records held by the job registry and the events it appends for each job.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobStatus(str, Enum):
    """Job execution status"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class SubmissionMode(str, Enum):
    """How the caller wants to receive the outcome of a submitted job"""
    SYNC = "sync"        # wait and return the final state in one response
    STREAM = "stream"    # live frames from submission time
    POLL = "poll"        # job id now, status lookups later


@dataclass
class DocumentPayload:
    """Document handed to a job"""
    data: bytes
    file_name: str
    content_type: str = "application/pdf"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class Job:
    """
    One end-to-end run of the extraction pipeline for one document.

    Mutated only through JobRegistry. Readers always get a copy from
    snapshot().
    """
    id: str
    status: JobStatus = JobStatus.QUEUED
    owner_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_stage: Optional[str] = None
    progress_percent: int = 0
    message: Optional[str] = None
    cancel_requested: bool = False
    cancel_requested_at: Optional[datetime] = None
    cancel_requested_by: Optional[str] = None
    result: Any = None
    error: Optional[Dict[str, Any]] = None

    # Submission metadata, used by the duplicate guard
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    content_type: Optional[str] = None

    partial_results: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> 'Job':
        """Detached copy safe to hand to readers"""
        return replace(self, partial_results=dict(self.partial_results))

    def to_dict(self, include_result: bool = False) -> Dict[str, Any]:
        data = {
            'job_id': self.id,
            'status': self.status.value,
            'owner_id': self.owner_id,
            'progress': self.progress_percent,
            'current_stage': self.current_stage,
            'message': self.message,
            'cancel_requested': self.cancel_requested,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'error': self.error,
            'sections_completed': list(self.partial_results.keys()),
            'file_name': self.file_name,
        }
        if include_result and self.status == JobStatus.COMPLETED:
            data['result'] = self.result
        return data


@dataclass(frozen=True)
class ProgressEvent:
    """Cumulative completion percentage for a job at a point in time"""
    job_id: str
    stage: str
    percent: int
    message: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PartialResult:
    """Output of one completed section, available before the job finishes"""
    job_id: str
    section: str
    data: Any
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StatusEvent:
    """A status transition; terminal ones close a job's event stream"""
    job_id: str
    status: JobStatus
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StageConfig:
    """One ordered, weighted pipeline stage"""
    name: str
    weight: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StageConfig':
        return cls(name=str(data['name']), weight=int(data.get('weight', 0)))
