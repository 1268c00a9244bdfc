"""
Extraction Job Service

Entry point used by callers: submit a document, look up a job, request
cancellation, list jobs. Wires the admission gate, registry, runner and
streaming adapter together around one injected set of stores.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from jobex.config.jobex_config import JobEXConfig
from jobex.errors import (
    DuplicateJobError,
    NotFoundError,
    RateLimitExceeded,
    Unauthorized,
    ValidationError,
)
from jobex.jobs.models import DocumentPayload, Job, JobStatus, SubmissionMode
from jobex.jobs.rate_limiter import RateLimiter
from jobex.jobs.registry import JobRegistry
from jobex.jobs.runner import JobRunner, RunnerConfig
from jobex.jobs.streaming import StreamingAdapter
from jobex.processors.base import Extractor
from jobex.storage.artifact_store import ArtifactStore, create_artifact_store

logger = logging.getLogger(__name__)


@dataclass
class Submission:
    """What submit() hands back, depending on the mode"""
    job_id: str
    mode: SubmissionMode
    status: Optional[Dict[str, Any]] = None             # sync: final state
    frames: Optional[AsyncIterator[Dict[str, Any]]] = None  # stream: live frames

    def to_dict(self) -> Dict[str, Any]:
        data = {'job_id': self.job_id, 'mode': self.mode.value}
        if self.status is not None:
            data['status'] = self.status
        return data


class ExtractionJobService:
    """
    Job orchestration facade.

    Usage:
        service = ExtractionJobService(extractor=KeywordSectionExtractor())
        service.start()

        submission = await service.submit(document, owner_id='user_1')
        status = await service.get_status(submission.job_id, include_result=True)

        await service.shutdown()
    """

    def __init__(
        self,
        extractor: Extractor,
        config: Optional[JobEXConfig] = None,
        registry: Optional[JobRegistry] = None,
        rate_limiter: Optional[RateLimiter] = None,
        artifact_store: Optional[ArtifactStore] = None,
        runner_config: Optional[RunnerConfig] = None
    ):
        self.config = config or JobEXConfig()
        self.registry = registry if registry is not None else JobRegistry()
        if rate_limiter is None:
            rate_limiter = RateLimiter(
                default_windows=self.config.get_rate_limits('default'),
                sweep_interval=self.config.get('rate_limits.sweep_interval_seconds', 300)
            )
        self.rate_limiter = rate_limiter
        if artifact_store is None:
            artifact_store = create_artifact_store(self.config.get('storage', {}))
        self.artifact_store = artifact_store
        self.runner = JobRunner(
            self.registry,
            extractor,
            config=runner_config or RunnerConfig.from_config(self.config),
            artifact_store=self.artifact_store
        )
        self.streaming = StreamingAdapter(self.registry, self.artifact_store)

        self.submission_windows = self.config.get_rate_limits('submission')
        self.max_file_size = self.config.get('submission.max_file_size', 50 * 1024 * 1024)
        self.allowed_content_types = set(self.config.get('submission.allowed_content_types', []))
        self.duplicate_window = self.config.get('submission.duplicate_window_seconds', 120)
        self.require_identity = self.config.get('submission.require_identity', False)

        self._tasks: Set[asyncio.Task] = set()

    def start(self) -> None:
        """Start background maintenance (admission sweep); needs a running loop"""
        self.rate_limiter.start_sweeper()

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop the sweep and wait for in-flight jobs, cancelling stragglers"""
        await self.rate_limiter.stop_sweeper()
        if not self._tasks:
            return

        logger.info(f"Waiting for {len(self._tasks)} active jobs to complete...")
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(f"Shutdown timeout - cancelling {len(pending)} jobs")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def submit(
        self,
        document: DocumentPayload,
        owner_id: Optional[str] = None,
        client_address: Optional[str] = None,
        mode: SubmissionMode = SubmissionMode.POLL
    ) -> Submission:
        """
        Submit a document for extraction.

        Checks run in order: identity, admission, payload validation,
        duplicate guard. Each failure is raised before any job exists.

        Args:
            document: Document payload
            owner_id: Authenticated caller, if any
            client_address: Caller address, used as rate-limit key without owner
            mode: SYNC waits for the final state, STREAM returns live frames,
                  POLL returns the job id immediately

        Returns:
            Submission

        Raises:
            Unauthorized, RateLimitExceeded, ValidationError, DuplicateJobError
        """
        mode = SubmissionMode(mode)

        if self.require_identity and not owner_id:
            raise Unauthorized("Authentication required")

        rate_key = owner_id or client_address or 'anonymous'
        admission = self.rate_limiter.check(rate_key, self.submission_windows)
        if not admission.allowed:
            logger.warning(f"Submission denied for {rate_key}: {admission.reason}")
            raise RateLimitExceeded(admission.reason, admission.retry_after_seconds, admission.window)

        self._validate(document)

        duplicate = await self.registry.find_active_duplicate(
            owner_id, document.file_name, document.size, self.duplicate_window
        )
        if duplicate is not None:
            raise DuplicateJobError(
                f"An identical job is already {duplicate.status.value}",
                existing_job_id=duplicate.id
            )

        job = await self.registry.create(
            owner_id=owner_id,
            file_name=document.file_name,
            file_size=document.size,
            content_type=document.content_type
        )

        if mode == SubmissionMode.STREAM:
            # Frames replay the whole event log, so starting the runner first loses nothing
            frames = self.streaming.frames(job.id)
            self._spawn(job.id, document)
            return Submission(job.id, mode, frames=frames)

        task = self._spawn(job.id, document)
        if mode == SubmissionMode.SYNC:
            await asyncio.shield(task)
            return Submission(job.id, mode, status=await self.get_status(job.id, include_result=True))

        return Submission(job.id, mode)

    async def get_status(self, job_id: str, include_result: bool = False) -> Dict[str, Any]:
        """
        Status of a job.

        The result is resolved from the artifact store only when asked for
        and only for Completed jobs.

        Raises:
            NotFoundError: if the job is unknown
        """
        job = await self._require(job_id)
        status = job.to_dict()
        if include_result and job.status == JobStatus.COMPLETED:
            status['result'] = await self._load_artifact(job.result)
        return status

    async def get_partial_results(self, job_id: str) -> Dict[str, Any]:
        """Sections recorded so far, kept after failure or cancellation"""
        await self._require(job_id)
        return await self.registry.get_partial_results(job_id)

    async def cancel(self, job_id: str, requested_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Request cooperative cancellation.

        Raises:
            NotFoundError: if the job is unknown
            InvalidStateError: if the job already finished
        """
        await self._require(job_id)
        job = await self.registry.request_cancellation(job_id, requested_by)
        return {
            'job_id': job.id,
            'status': job.status.value,
            'cancel_requested': job.cancel_requested,
            'message': "Cancellation requested",
        }

    def stream(self, job_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Frames for an existing job; safe to call any number of times"""
        return self.streaming.frames(job_id)

    async def list_jobs(self, owner_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        jobs = await self.registry.list_jobs(owner_id=owner_id, limit=limit)
        return [job.to_dict() for job in jobs]

    def get_stats(self) -> Dict[str, Any]:
        return {
            'jobs': len(self.registry),
            'running_tasks': len(self._tasks),
            'rate_limited_identifiers': len(self.rate_limiter),
            'runner': self.runner.get_stats(),
        }

    def _validate(self, document: DocumentPayload) -> None:
        if document is None or not document.data:
            raise ValidationError("No document provided")
        if document.size > self.max_file_size:
            raise ValidationError(
                f"Document too large ({document.size} bytes, max {self.max_file_size})"
            )
        if self.allowed_content_types and document.content_type not in self.allowed_content_types:
            raise ValidationError(f"Unsupported content type: {document.content_type}")

    def _spawn(self, job_id: str, document: DocumentPayload) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.runner.run(job_id, document))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background job task failed: {error!r}")

    async def _require(self, job_id: str) -> Job:
        job = await self.registry.get_status(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    async def _load_artifact(self, reference: Any) -> Any:
        if not isinstance(reference, str):
            return reference
        artifact = await asyncio.to_thread(self.artifact_store.load, reference)
        return {'reference': reference, **artifact} if artifact is not None else None
