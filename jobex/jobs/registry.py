"""
Job Registry

Authoritative in-process store of job records and their event logs.

Every write to a job goes through that job's own asyncio.Lock, so progress
updates, partial results, cancellation flags and status transitions for one
job are linearized while different jobs never contend with each other.
Each job also carries an append-only event log; subscribers receive a
replay of the log followed by live events through an asyncio.Queue.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from jobex.errors import InvalidStateError, JobEXError, NotFoundError
from jobex.jobs.models import (
    Job,
    JobStatus,
    PartialResult,
    ProgressEvent,
    StatusEvent,
    utcnow,
)

logger = logging.getLogger(__name__)

JobEvent = Union[ProgressEvent, PartialResult, StatusEvent]


@dataclass
class _JobRecord:
    job: Job
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    events: List[JobEvent] = field(default_factory=list)
    subscribers: List[asyncio.Queue] = field(default_factory=list)

    def append(self, event: JobEvent) -> None:
        self.events.append(event)
        for queue in self.subscribers:
            queue.put_nowait(event)


class JobRegistry:
    """
    Single source of truth for job status, progress and results.

    Usage:
        registry = JobRegistry()
        job = await registry.create(owner_id='user_1')

        await registry.mark_running(job.id)
        await registry.record_progress(job.id, 'acquisition', 10, 'Document read')
        await registry.mark_completed(job.id, result='doc_123')
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._records: Dict[str, _JobRecord] = {}

    async def create(
        self,
        owner_id: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        content_type: Optional[str] = None
    ) -> Job:
        """Create a job in Queued state with zero progress"""
        job = Job(
            id=f"job_{uuid4().hex}",
            owner_id=owner_id,
            created_at=self._clock(),
            message="Job created, waiting to be processed",
            file_name=file_name,
            file_size=file_size,
            content_type=content_type,
        )
        record = _JobRecord(job=job)
        record.append(StatusEvent(job.id, JobStatus.QUEUED, timestamp=job.created_at))
        self._records[job.id] = record

        logger.info(f"Created job {job.id} for owner {owner_id or 'anonymous'}")
        return job.snapshot()

    async def mark_running(self, job_id: str) -> Job:
        """Queued -> Running"""
        record = self._get_record(job_id)
        async with record.lock:
            job = record.job
            if job.status != JobStatus.QUEUED:
                raise InvalidStateError(
                    f"Job {job_id} cannot start from status {job.status.value}"
                )
            job.status = JobStatus.RUNNING
            job.started_at = self._clock()
            job.message = "Processing started"
            record.append(StatusEvent(job_id, JobStatus.RUNNING, timestamp=job.started_at))

        logger.info(f"Job {job_id} running")
        return job.snapshot()

    async def record_progress(
        self,
        job_id: str,
        stage: str,
        percent: int,
        message: str = ""
    ) -> Job:
        """
        Record cumulative progress for a job.

        Percent never decreases: a value lower than the stored one is clamped
        up to it.
        """
        record = self._get_record(job_id)
        async with record.lock:
            job = record.job
            self._ensure_not_terminal(job, "record progress")

            effective = max(job.progress_percent, min(100, max(0, int(percent))))
            job.progress_percent = effective
            job.current_stage = stage
            job.message = message
            record.append(ProgressEvent(job_id, stage, effective, message, self._clock()))

        logger.debug(f"Job {job_id} progress {effective}% ({stage}): {message}")
        return job.snapshot()

    async def record_partial_result(self, job_id: str, section: str, data: Any) -> Job:
        """
        Store output for one completed section, keyed by section name.

        A repeat for the same section replaces the stored value but adds no
        event, so each section appears once in the log.
        """
        record = self._get_record(job_id)
        async with record.lock:
            job = record.job
            self._ensure_not_terminal(job, "record a partial result")
            is_new = section not in job.partial_results
            job.partial_results[section] = data
            if is_new:
                record.append(PartialResult(job_id, section, data, self._clock()))

        logger.debug(f"Job {job_id} partial result for section {section}")
        return job.snapshot()

    async def mark_completed(self, job_id: str, result: Any) -> Job:
        """Running -> Completed"""
        return await self._finish(job_id, JobStatus.COMPLETED, result=result)

    async def mark_failed(
        self,
        job_id: str,
        error: Union[JobEXError, Dict[str, Any]]
    ) -> Job:
        """Running -> Failed, storing the classified error"""
        if isinstance(error, JobEXError):
            error = error.to_dict()
        return await self._finish(job_id, JobStatus.FAILED, error=error)

    async def mark_cancelled(self, job_id: str) -> Job:
        """Queued or Running -> Cancelled"""
        return await self._finish(job_id, JobStatus.CANCELLED)

    async def request_cancellation(
        self,
        job_id: str,
        requested_by: Optional[str] = None
    ) -> Job:
        """
        Flag a job for cooperative cancellation.

        A job that has not started yet goes straight to Cancelled. A running
        job keeps running until the runner reaches its next checkpoint.
        Requesting twice is harmless; requesting after a terminal state is
        an InvalidStateError.
        """
        record = self._get_record(job_id)
        async with record.lock:
            job = record.job
            if job.is_terminal:
                raise InvalidStateError(
                    f"Job {job_id} is already {job.status.value}, nothing to cancel"
                )
            if not job.cancel_requested:
                job.cancel_requested = True
                job.cancel_requested_at = self._clock()
                job.cancel_requested_by = requested_by
                logger.info(f"Cancellation requested for job {job_id} by {requested_by or 'unknown'}")

            if job.status == JobStatus.QUEUED:
                self._apply_terminal(record, JobStatus.CANCELLED)

        return job.snapshot()

    async def is_cancel_requested(self, job_id: str) -> bool:
        """Checkpoint read used by the runner"""
        record = self._get_record(job_id)
        async with record.lock:
            return record.job.cancel_requested

    async def get_status(self, job_id: str) -> Optional[Job]:
        record = self._records.get(job_id)
        if record is None:
            return None
        async with record.lock:
            return record.job.snapshot()

    async def get_result(self, job_id: str) -> Any:
        """Stored result, only for Completed jobs"""
        job = await self.get_status(job_id)
        if job is None or job.status != JobStatus.COMPLETED:
            return None
        return job.result

    async def get_partial_results(self, job_id: str) -> Dict[str, Any]:
        record = self._get_record(job_id)
        async with record.lock:
            return dict(record.job.partial_results)

    async def get_events(self, job_id: str, since: int = 0) -> List[JobEvent]:
        """Event log from position `since` onwards"""
        record = self._get_record(job_id)
        async with record.lock:
            return list(record.events[since:])

    async def subscribe(self, job_id: str) -> asyncio.Queue:
        """
        Queue receiving the job's full event log followed by live events.

        Replay and registration happen under the job lock, so no event is
        lost or delivered twice.
        """
        record = self._get_record(job_id)
        queue: asyncio.Queue = asyncio.Queue()
        async with record.lock:
            for event in record.events:
                queue.put_nowait(event)
            record.subscribers.append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        record = self._records.get(job_id)
        if record and queue in record.subscribers:
            record.subscribers.remove(queue)

    async def list_jobs(self, owner_id: Optional[str] = None, limit: int = 20) -> List[Job]:
        """Jobs newest first, optionally filtered by owner"""
        jobs = [
            record.job.snapshot()
            for record in self._records.values()
            if owner_id is None or record.job.owner_id == owner_id
        ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    async def find_active_duplicate(
        self,
        owner_id: Optional[str],
        file_name: str,
        file_size: int,
        within_seconds: float
    ) -> Optional[Job]:
        """Newest queued or running job for the same document and owner"""
        cutoff = self._clock() - timedelta(seconds=within_seconds)
        candidates = [
            record.job
            for record in self._records.values()
            if record.job.owner_id == owner_id
            and record.job.file_name == file_name
            and record.job.file_size == file_size
            and record.job.status in (JobStatus.QUEUED, JobStatus.RUNNING)
            and record.job.created_at >= cutoff
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda job: job.created_at).snapshot()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._records

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        result: Any = None,
        error: Optional[Dict[str, Any]] = None
    ) -> Job:
        record = self._get_record(job_id)
        async with record.lock:
            job = record.job
            if job.is_terminal:
                # Duplicate terminal signal: keep what is stored
                logger.debug(
                    f"Job {job_id} already {job.status.value}, ignoring {status.value}"
                )
                return job.snapshot()

            allowed = (JobStatus.QUEUED, JobStatus.RUNNING) if status == JobStatus.CANCELLED \
                else (JobStatus.RUNNING,)
            if job.status not in allowed:
                raise InvalidStateError(
                    f"Job {job_id} cannot move from {job.status.value} to {status.value}"
                )
            self._apply_terminal(record, status, result=result, error=error)

        return job.snapshot()

    def _apply_terminal(
        self,
        record: _JobRecord,
        status: JobStatus,
        result: Any = None,
        error: Optional[Dict[str, Any]] = None
    ) -> None:
        # Caller holds record.lock
        job = record.job
        job.status = status
        job.completed_at = self._clock()
        if status == JobStatus.COMPLETED:
            job.result = result
            job.progress_percent = 100
            job.message = "Extraction completed"
        elif status == JobStatus.FAILED:
            job.error = error
            job.message = (error or {}).get('message') or "Extraction failed"
        else:
            job.message = "Extraction cancelled"
        record.append(StatusEvent(job.id, status, result=result, error=error, timestamp=job.completed_at))

        log = logger.error if status == JobStatus.FAILED else logger.info
        log(f"Job {job.id} {status.value}" + (f": {job.message}" if error else ""))

    def _get_record(self, job_id: str) -> _JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return record

    @staticmethod
    def _ensure_not_terminal(job: Job, action: str) -> None:
        if job.is_terminal:
            raise InvalidStateError(
                f"Cannot {action} for job {job.id}: already {job.status.value}"
            )
