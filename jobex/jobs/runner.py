"""
Job Runner

Executes the ordered, weighted pipeline stages for one job.
Supports:
- Cooperative cancellation checked before each stage, between sections
  and before each retry
- Retries with exponential backoff for transient upstream failures
- Cumulative progress and per-section partial results written to the
  registry as they happen
- Per-call timeouts classified as transient failures

Stages run strictly in order within a job. Many jobs run concurrently as
independent asyncio tasks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from jobex.config.jobex_config import JobEXConfig
from jobex.errors import (
    InvalidStateError,
    JobCancelledError,
    TerminalUpstreamError,
    UpstreamError,
    ValidationError,
    classify_exception,
)
from jobex.jobs.models import DocumentPayload, Job, StageConfig
from jobex.jobs.registry import JobRegistry
from jobex.processors.base import Extractor
from jobex.processors.document_sizer import DocumentSizer
from jobex.storage.artifact_store import ArtifactStore, InMemoryArtifactStore

logger = logging.getLogger(__name__)

KNOWN_STAGES = ('acquisition', 'recognition', 'extraction', 'assembly')

DEFAULT_STAGES = [
    StageConfig('acquisition', 10),
    StageConfig('recognition', 30),
    StageConfig('extraction', 50),
    StageConfig('assembly', 10),
]


@dataclass
class RunnerConfig:
    """Runner configuration"""
    stages: List[StageConfig] = field(default_factory=lambda: list(DEFAULT_STAGES))
    sections: List[str] = field(default_factory=lambda: ['parties', 'rent', 'indexation', 'guarantee'])

    # Retries
    max_retries: int = 3
    retry_delay_base: float = 1.0  # seconds
    retry_delay_max: float = 30.0  # seconds

    # Timeout per extractor call, None for unbounded
    call_timeout: Optional[float] = 120.0

    # Document sizing
    max_direct_length: int = 1_000_000
    start_ratio: float = 0.7
    end_ratio: float = 0.3
    marker_reserve: int = 200

    def __post_init__(self):
        unknown = [stage.name for stage in self.stages if stage.name not in KNOWN_STAGES]
        if unknown:
            raise ValidationError(f"Unknown pipeline stages: {unknown}")
        total = sum(stage.weight for stage in self.stages)
        if total != 100:
            raise ValidationError(f"Stage weights must sum to 100, got {total}")
        if len(set(self.sections)) != len(self.sections):
            raise ValidationError(f"Duplicate section names: {self.sections}")
        if self.max_retries < 0:
            raise ValidationError("max_retries must be >= 0")

    @classmethod
    def from_config(cls, config: JobEXConfig) -> 'RunnerConfig':
        return cls(
            stages=[StageConfig.from_dict(stage) for stage in config.get_stages()],
            sections=config.get_sections(),
            max_retries=config.get('pipeline.max_retries', 3),
            retry_delay_base=config.get('pipeline.retry_delay_base', 1.0),
            retry_delay_max=config.get('pipeline.retry_delay_max', 30.0),
            call_timeout=config.get('pipeline.call_timeout', 120.0),
            max_direct_length=config.get('sizing.max_direct_length', 1_000_000),
            start_ratio=config.get('sizing.start_ratio', 0.7),
            end_ratio=config.get('sizing.end_ratio', 0.3),
            marker_reserve=config.get('sizing.marker_reserve', 200),
        )

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)"""
        return min(self.retry_delay_base * (2 ** (attempt - 1)), self.retry_delay_max)


class CancellationToken:
    """
    Checkpoint handle passed through the pipeline.

    Reads the job's cancellation flag from the registry; never interrupts
    an extractor call that is already running.
    """

    def __init__(self, registry: JobRegistry, job_id: str):
        self.registry = registry
        self.job_id = job_id

    async def is_cancelled(self) -> bool:
        return await self.registry.is_cancel_requested(self.job_id)

    async def check(self) -> None:
        """Raise JobCancelledError if cancellation was requested"""
        if await self.is_cancelled():
            logger.info(f"Job {self.job_id} observed cancellation at checkpoint")
            raise JobCancelledError()


@dataclass
class PipelineContext:
    """State carried between the stages of one job"""
    job_id: str
    owner_id: Optional[str]
    document: DocumentPayload
    token: CancellationToken
    text: str = ""
    sizing: Dict[str, Any] = field(default_factory=dict)
    sections: Dict[str, Any] = field(default_factory=dict)
    retries: int = 0
    stage_durations: Dict[str, float] = field(default_factory=dict)
    artifact_ref: Optional[str] = None


class JobRunner:
    """
    Runs extraction jobs registered in a JobRegistry.

    Usage:
        runner = JobRunner(registry, extractor, config=RunnerConfig())

        job = await registry.create(owner_id='user_1')
        final = await runner.run(job.id, document)
    """

    def __init__(
        self,
        registry: JobRegistry,
        extractor: Extractor,
        config: Optional[RunnerConfig] = None,
        artifact_store: Optional[ArtifactStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.registry = registry
        self.extractor = extractor
        self.config = config or RunnerConfig()
        self.artifact_store = artifact_store if artifact_store is not None else InMemoryArtifactStore()
        self.sizer = DocumentSizer(
            start_ratio=self.config.start_ratio,
            end_ratio=self.config.end_ratio,
            marker_reserve=self.config.marker_reserve
        )
        self._sleep = sleep

        self._handlers: Dict[str, Callable[[PipelineContext, StageConfig, int], Awaitable[None]]] = {
            'acquisition': self._run_acquisition,
            'recognition': self._run_recognition,
            'extraction': self._run_extraction,
            'assembly': self._run_assembly,
        }

        # Metrics
        self._completed_count = 0
        self._failed_count = 0
        self._cancelled_count = 0
        self._retry_count = 0
        self._active_jobs: set = set()

    async def run(self, job_id: str, document: DocumentPayload) -> Job:
        """
        Execute the pipeline for a queued job.

        Always leaves the job in a terminal state, except when the job was
        not Queued to begin with (already cancelled, or started elsewhere),
        in which case the job is returned untouched.

        Returns:
            Final job snapshot
        """
        try:
            job = await self.registry.mark_running(job_id)
        except InvalidStateError as e:
            logger.info(f"Skipping job {job_id}: {e}")
            return await self.registry.get_status(job_id)

        context = PipelineContext(
            job_id=job_id,
            owner_id=job.owner_id,
            document=document,
            token=CancellationToken(self.registry, job_id)
        )
        self._active_jobs.add(job_id)

        try:
            completed_weight = 0
            for stage in self.config.stages:
                await context.token.check()
                await self.registry.record_progress(
                    job_id, stage.name, completed_weight, f"Starting {stage.name}"
                )

                started = datetime.now(timezone.utc)
                await self._handlers[stage.name](context, stage, completed_weight)
                context.stage_durations[stage.name] = (
                    datetime.now(timezone.utc) - started
                ).total_seconds()

                completed_weight += stage.weight
                await self.registry.record_progress(
                    job_id, stage.name, completed_weight, f"Completed {stage.name}"
                )

            final = await self.registry.mark_completed(job_id, context.artifact_ref)
            self._completed_count += 1

        except JobCancelledError:
            final = await self.registry.mark_cancelled(job_id)
            self._cancelled_count += 1

        except UpstreamError as e:
            logger.error(f"Job {job_id} failed: {e.message}")
            final = await self.registry.mark_failed(job_id, e)
            self._failed_count += 1

        except asyncio.CancelledError:
            # Task torn down (service shutdown): record the outcome, then propagate
            await self.registry.mark_cancelled(job_id)
            self._cancelled_count += 1
            raise

        except Exception as e:
            logger.exception(f"Job {job_id} crashed: {e}")
            final = await self.registry.mark_failed(
                job_id, {'code': 'internal_error', 'message': str(e) or e.__class__.__name__}
            )
            self._failed_count += 1

        finally:
            self._active_jobs.discard(job_id)

        return final

    async def _run_acquisition(self, context: PipelineContext, stage: StageConfig, base: int) -> None:
        context.text = await self._call(context, 'acquire', self.extractor.acquire, context.document)
        logger.info(f"Job {context.job_id} acquired {len(context.text)} chars")

    async def _run_recognition(self, context: PipelineContext, stage: StageConfig, base: int) -> None:
        context.text = await self._call(
            context, 'recognize', self.extractor.recognize, context.document, context.text
        )

    async def _run_extraction(self, context: PipelineContext, stage: StageConfig, base: int) -> None:
        sizing = self.sizer.prepare(context.text, self.config.max_direct_length)
        context.sizing = sizing.to_dict()

        sections = self.config.sections
        total = len(sections)
        for index, section in enumerate(sections, start=1):
            await context.token.check()

            data = await self._call(
                context, f'extract:{section}', self.extractor.extract_section, section, sizing.text
            )
            context.sections[section] = data
            await self.registry.record_partial_result(context.job_id, section, data)

            percent = base + (stage.weight * index) // total
            await self.registry.record_progress(
                context.job_id, stage.name, percent, f"Extracted {section} ({index}/{total})"
            )

    async def _run_assembly(self, context: PipelineContext, stage: StageConfig, base: int) -> None:
        metadata = {
            'sizing': context.sizing,
            'retries': context.retries,
            'stage_durations': dict(context.stage_durations),
        }
        artifact = await self._call(
            context, 'assemble', self.extractor.assemble,
            context.document, dict(context.sections), metadata
        )
        context.artifact_ref = await asyncio.to_thread(
            self.artifact_store.save, context.job_id, artifact, context.owner_id
        )

    async def _call(self, context: PipelineContext, label: str, func: Callable[..., Awaitable[Any]], *args) -> Any:
        """
        Invoke one extractor call with timeout and bounded retries.

        Transient failures are retried up to max_retries times with
        exponential backoff; exhausting the budget is terminal.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                if self.config.call_timeout is not None:
                    return await asyncio.wait_for(func(*args), timeout=self.config.call_timeout)
                return await func(*args)

            except (JobCancelledError, asyncio.CancelledError):
                raise

            except Exception as e:
                error = classify_exception(e)
                if not error.retryable:
                    if error is e:
                        raise
                    raise error from e

                if attempt > self.config.max_retries:
                    raise TerminalUpstreamError(
                        f"Max retries exceeded for {label}. Last error: {error.message}",
                        attempts=attempt
                    ) from e

                delay = self.config.retry_delay(attempt)
                logger.warning(
                    f"Job {context.job_id} {label} failed ({error.message}), "
                    f"retry {attempt}/{self.config.max_retries} in {delay}s"
                )
                context.retries += 1
                self._retry_count += 1

                await self._sleep(delay)
                await context.token.check()

    def get_stats(self) -> Dict[str, Any]:
        """Get runner statistics"""
        return {
            'active_jobs': len(self._active_jobs),
            'completed_count': self._completed_count,
            'failed_count': self._failed_count,
            'cancelled_count': self._cancelled_count,
            'retry_count': self._retry_count,
            'stages': [stage.name for stage in self.config.stages],
        }
