"""
Tests for the extraction job service

Submission checks, delivery modes, status lookup, cancellation and listing.
"""

import asyncio
import threading
import pytest

from jobex.config.jobex_config import JobEXConfig
from jobex.errors import (
    DuplicateJobError,
    InvalidStateError,
    NotFoundError,
    RateLimitExceeded,
    Unauthorized,
    ValidationError
)
from jobex.jobs.models import DocumentPayload, JobStatus, SubmissionMode
from jobex.jobs.service import ExtractionJobService
from jobex.processors.keyword_extractor import KeywordSectionExtractor
from jobex.storage.artifact_store import InMemoryArtifactStore

LEASE = """
ENTRE LES SOUSSIGNES : la société ALPHA, le Bailleur, et la société BETA, le Preneur.
DUREE DU BAIL : neuf années à compter de la prise d'effet.
Le loyer annuel est fixé à 48 000 euros.
INDEXATION sur l'indice ILAT.
DEPOT DE GARANTIE : trois mois de loyer.
""".encode('utf-8')


def lease(name='lease.txt', data=LEASE, content_type='text/plain'):
    return DocumentPayload(data=data, file_name=name, content_type=content_type)


def make_service(**overrides):
    config = JobEXConfig(overrides={
        'pipeline': {'sections': ['parties', 'rent', 'indexation', 'guarantee'], 'retry_delay_base': 0.0},
        **overrides
    })
    return ExtractionJobService(extractor=KeywordSectionExtractor(), config=config)


async def wait_for_terminal(service, job_id):
    async for _ in service.stream(job_id):
        pass
    return await service.get_status(job_id)


class TestSubmissionChecks:
    """Tests for checks that run before a job exists"""

    @pytest.mark.asyncio
    async def test_identity_required(self):
        service = make_service(submission={'require_identity': True})

        with pytest.raises(Unauthorized):
            await service.submit(lease())
        assert len(service.registry) == 0

    @pytest.mark.asyncio
    async def test_empty_document(self):
        service = make_service()

        with pytest.raises(ValidationError):
            await service.submit(lease(data=b''), owner_id='user_1')

    @pytest.mark.asyncio
    async def test_oversized_document(self):
        service = make_service(submission={'max_file_size': 10})

        with pytest.raises(ValidationError) as exc_info:
            await service.submit(lease(), owner_id='user_1')
        assert 'too large' in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unsupported_content_type(self):
        service = make_service()

        with pytest.raises(ValidationError):
            await service.submit(lease(name='lease.docx', content_type='application/msword'), owner_id='user_1')

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        service = make_service(rate_limits={'submission': {'minute': {'duration_seconds': 60, 'max_requests': 2}}})

        await service.submit(lease('a.txt'), owner_id='user_1')
        await service.submit(lease('b.txt'), owner_id='user_1')
        with pytest.raises(RateLimitExceeded) as exc_info:
            await service.submit(lease('c.txt'), owner_id='user_1')

        assert exc_info.value.window == 'minute'
        assert 1 <= exc_info.value.retry_after_seconds <= 60
        assert exc_info.value.to_dict()['code'] == 'rate_limit_exceeded'
        assert len(service.registry) == 2
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_anonymous_callers_keyed_by_address(self):
        service = make_service(rate_limits={'submission': {'minute': {'duration_seconds': 60, 'max_requests': 1}}})

        await service.submit(lease('a.txt'), client_address='10.0.0.1')
        await service.submit(lease('b.txt'), client_address='10.0.0.2')
        with pytest.raises(RateLimitExceeded):
            await service.submit(lease('c.txt'), client_address='10.0.0.1')
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_rate_limit_checked_before_validation(self):
        service = make_service(rate_limits={'submission': {'minute': {'duration_seconds': 60, 'max_requests': 1}}})

        with pytest.raises(ValidationError):
            await service.submit(lease(data=b''), owner_id='user_1')
        with pytest.raises(RateLimitExceeded):
            await service.submit(lease(data=b''), owner_id='user_1')

    @pytest.mark.asyncio
    async def test_duplicate_active_job(self):
        service = make_service()

        first = await service.submit(lease(), owner_id='user_1')
        with pytest.raises(DuplicateJobError) as exc_info:
            await service.submit(lease(), owner_id='user_1')

        assert exc_info.value.existing_job_id == first.job_id
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_resubmit_after_completion(self):
        service = make_service()

        first = await service.submit(lease(), owner_id='user_1', mode=SubmissionMode.SYNC)
        second = await service.submit(lease(), owner_id='user_1')

        assert second.job_id != first.job_id
        await service.shutdown()


class TestSubmissionModes:
    """Tests for sync, stream and poll delivery"""

    @pytest.mark.asyncio
    async def test_sync_returns_final_state(self):
        service = make_service()

        submission = await service.submit(lease(), owner_id='user_1', mode=SubmissionMode.SYNC)

        status = submission.status
        assert status['status'] == 'completed'
        assert status['progress'] == 100
        assert status['result']['reference'].startswith('doc_')
        assert status['result']['sections']['rent']['found'] is True
        assert status['result']['metadata']['extracted_sections'] == 4
        assert submission.to_dict()['mode'] == 'sync'

    @pytest.mark.asyncio
    async def test_stream_yields_frames_until_final(self):
        service = make_service()

        submission = await service.submit(lease(), owner_id='user_1', mode=SubmissionMode.STREAM)
        frames = [frame async for frame in submission.frames]

        assert frames[0]['type'] == 'progress'
        assert frames[-1]['type'] == 'final_result'
        assert frames[-1]['status'] == 'completed'
        sections = [f['section'] for f in frames if f['type'] == 'partial_result']
        assert sections == ['parties', 'rent', 'indexation', 'guarantee']
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_poll_returns_job_id_immediately(self):
        service = make_service()

        submission = await service.submit(lease(), owner_id='user_1')

        assert submission.mode == SubmissionMode.POLL
        assert submission.status is None
        status = await wait_for_terminal(service, submission.job_id)
        assert status['status'] == 'completed'
        assert 'result' not in status

    @pytest.mark.asyncio
    async def test_mode_accepts_string(self):
        service = make_service()
        submission = await service.submit(lease(), owner_id='user_1', mode='sync')
        assert submission.status['status'] == 'completed'


class TestJobLookups:
    """Tests for status, partial results, cancellation and listing"""

    def setup_method(self):
        self.service = make_service()

    @pytest.mark.asyncio
    async def test_status_unknown_job(self):
        with pytest.raises(NotFoundError):
            await self.service.get_status('job_missing')
        with pytest.raises(NotFoundError):
            await self.service.cancel('job_missing')

    @pytest.mark.asyncio
    async def test_status_fields(self):
        submission = await self.service.submit(lease(), owner_id='user_1', mode='sync')

        status = await self.service.get_status(submission.job_id)

        for key in ('status', 'progress', 'current_stage', 'created_at', 'started_at', 'completed_at'):
            assert key in status
        assert 'result' not in status
        assert status['sections_completed'] == ['parties', 'rent', 'indexation', 'guarantee']

    @pytest.mark.asyncio
    async def test_partial_results(self):
        submission = await self.service.submit(lease(), owner_id='user_1', mode='sync')

        partials = await self.service.get_partial_results(submission.job_id)

        assert partials['guarantee']['found'] is True
        assert 'garantie' in partials['guarantee']['excerpt'].lower()

    @pytest.mark.asyncio
    async def test_cancel_queued_job(self):
        submission = await self.service.submit(lease(), owner_id='user_1')

        # The runner task has not been scheduled yet
        ack = await self.service.cancel(submission.job_id, requested_by='user_1')

        assert ack['status'] == 'cancelled'
        assert ack['cancel_requested'] is True
        await asyncio.sleep(0)
        status = await self.service.get_status(submission.job_id)
        assert status['status'] == 'cancelled'
        assert status['started_at'] is None

    @pytest.mark.asyncio
    async def test_cancel_finished_job(self):
        submission = await self.service.submit(lease(), owner_id='user_1', mode='sync')

        with pytest.raises(InvalidStateError):
            await self.service.cancel(submission.job_id)

    @pytest.mark.asyncio
    async def test_list_jobs(self):
        await self.service.submit(lease('a.txt'), owner_id='user_1', mode='sync')
        await self.service.submit(lease('b.txt'), owner_id='user_1', mode='sync')
        await self.service.submit(lease('c.txt'), owner_id='user_2', mode='sync')

        jobs = await self.service.list_jobs('user_1')

        assert [job['file_name'] for job in jobs] == ['b.txt', 'a.txt']
        assert all(job['status'] == JobStatus.COMPLETED.value for job in jobs)

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_jobs(self):
        self.service.start()
        submission = await self.service.submit(lease(), owner_id='user_1')

        await self.service.shutdown(timeout=5)

        status = await self.service.get_status(submission.job_id)
        assert status['status'] == 'completed'
        assert self.service.get_stats()['running_tasks'] == 0


class ThreadRecordingStore(InMemoryArtifactStore):
    """In-memory store that notes which thread each call ran on"""

    def __init__(self):
        super().__init__()
        self.threads = []

    def save(self, job_id, artifact, owner_id=None):
        self.threads.append(threading.get_ident())
        return super().save(job_id, artifact, owner_id)

    def load(self, reference):
        self.threads.append(threading.get_ident())
        return super().load(reference)


class TestArtifactStoreAccess:
    """Artifact store calls stay off the event loop thread"""

    @pytest.mark.asyncio
    async def test_store_calls_run_in_worker_threads(self):
        store = ThreadRecordingStore()
        config = JobEXConfig(overrides={'pipeline': {'retry_delay_base': 0.0}})
        service = ExtractionJobService(extractor=KeywordSectionExtractor(), config=config, artifact_store=store)

        sync = await service.submit(lease('a.txt'), owner_id='user_1', mode='sync')
        streamed = await service.submit(lease('b.txt'), owner_id='user_1', mode='stream')
        frames = [frame async for frame in streamed.frames]

        assert sync.status['result']['reference'].startswith('doc_')
        assert frames[-1]['result']['reference'].startswith('doc_')
        # two saves, the sync status load and the final frame load
        assert len(store.threads) == 4
        assert threading.get_ident() not in store.threads
        await service.shutdown()
