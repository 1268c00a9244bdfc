"""
JobEX Errors

Error taxonomy shared by the admission path, the job registry and the runner.

Submission-time errors (ValidationError, Unauthorized, RateLimitExceeded,
DuplicateJobError) are raised to the caller before a job exists. Errors that
happen while a job runs are classified and stored on the job record instead.
"""

import asyncio
from typing import Any, Dict, Optional


class JobEXError(Exception):
    """Base class for all JobEX errors"""

    code = "jobex_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used for job records and stream frames"""
        payload = {'code': self.code, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(JobEXError):
    """Bad, oversized or wrong-type input"""
    code = "validation_error"


class Unauthorized(JobEXError):
    """Missing or invalid caller identity"""
    code = "unauthorized"


class RateLimitExceeded(JobEXError):
    """Admission gate denied the request"""

    code = "rate_limit_exceeded"

    def __init__(
        self,
        reason: str,
        retry_after_seconds: int,
        window: Optional[str] = None
    ):
        super().__init__(reason, retry_after_seconds=retry_after_seconds, window=window)
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds
        self.window = window


class DuplicateJobError(JobEXError):
    """An identical job is already queued or running"""

    code = "duplicate_job"

    def __init__(self, message: str, existing_job_id: str):
        super().__init__(message, existing_job_id=existing_job_id)
        self.existing_job_id = existing_job_id


class NotFoundError(JobEXError):
    """Unknown job id"""
    code = "not_found"


class InvalidStateError(JobEXError):
    """Operation not valid for the job's current state"""
    code = "invalid_state"


class UpstreamError(JobEXError):
    """
    Failure reported by the Extractor collaborator.

    Retryable failures (timeouts, upstream throttling) are retried by the
    runner; anything else stops the pipeline.
    """

    code = "upstream_error"
    retryable = False

    def __init__(self, message: str = "", retryable: Optional[bool] = None, **details: Any):
        super().__init__(message, **details)
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload['retryable'] = self.retryable
        return payload


class RetryableUpstreamError(UpstreamError):
    """Transient upstream failure"""
    retryable = True


class TerminalUpstreamError(UpstreamError):
    """Permanent upstream failure (malformed input, rejected request)"""
    retryable = False


class JobCancelledError(JobEXError):
    """
    Raised inside the runner when a checkpoint observes a cancellation request.

    Cancellation is a normal terminal outcome, not a failure.
    """

    code = "cancelled"

    def __init__(self, message: str = "Extraction cancelled"):
        super().__init__(message)


def classify_exception(error: BaseException) -> UpstreamError:
    """
    Map an exception raised by an Extractor call onto the upstream taxonomy.

    Timeouts are transient. Unknown exceptions are treated as terminal so a
    programming error never loops through the retry budget.
    """
    if isinstance(error, UpstreamError):
        return error
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return RetryableUpstreamError(str(error) or error.__class__.__name__)
    return TerminalUpstreamError(str(error) or error.__class__.__name__)
