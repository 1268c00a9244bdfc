"""
JobEX - Document Extraction Job Orchestration

Runs long document extractions as background jobs with admission control,
progress reporting, partial results and cooperative cancellation.

Basic usage:
    from jobex import ExtractionJobService, DocumentPayload
    from jobex.processors import KeywordSectionExtractor

    service = ExtractionJobService(extractor=KeywordSectionExtractor())

    # Submit and poll
    submission = await service.submit(
        DocumentPayload(data=pdf_bytes, file_name='lease.pdf'),
        owner_id='user_1'
    )
    print(await service.get_status(submission.job_id))

    # Or follow live frames
    async for frame in service.stream(submission.job_id):
        print(frame)
"""

from jobex.config.jobex_config import JobEXConfig
from jobex.jobs.models import DocumentPayload, JobStatus, SubmissionMode
from jobex.jobs.service import ExtractionJobService

__all__ = ['ExtractionJobService', 'JobEXConfig', 'DocumentPayload', 'JobStatus', 'SubmissionMode']

__version__ = '0.1.0'
