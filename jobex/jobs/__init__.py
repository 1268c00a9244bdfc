"""
JobEX Jobs Module

Asynchronous extraction jobs with progress, partial results and
cooperative cancellation.

Components:
- RateLimiter: Multi-window admission gate keyed by caller
- JobRegistry: Single source of truth for job state and event logs
- JobRunner: Executes the weighted pipeline stages with retries
- StreamingAdapter: Projects job events into ordered frames
- ExtractionJobService: Submission, lookup, cancellation and listing
"""

from .models import (
    DocumentPayload,
    Job,
    JobStatus,
    PartialResult,
    ProgressEvent,
    StageConfig,
    StatusEvent,
    SubmissionMode
)
from .rate_limiter import RateLimiter, RateLimitResult, RateLimitWindow
from .registry import JobRegistry
from .runner import CancellationToken, JobRunner, RunnerConfig
from .streaming import StreamingAdapter, encode_sse
from .service import ExtractionJobService, Submission

__all__ = [
    # Models
    'DocumentPayload',
    'Job',
    'JobStatus',
    'PartialResult',
    'ProgressEvent',
    'StageConfig',
    'StatusEvent',
    'SubmissionMode',

    # Admission
    'RateLimiter',
    'RateLimitResult',
    'RateLimitWindow',

    # Execution
    'JobRegistry',
    'JobRunner',
    'RunnerConfig',
    'CancellationToken',

    # Delivery
    'StreamingAdapter',
    'encode_sse',
    'ExtractionJobService',
    'Submission'
]
