"""
Tests for the job registry

State machine transitions, progress clamping, cancellation flags, event log
replay and lookup helpers.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from jobex.errors import InvalidStateError, NotFoundError, RetryableUpstreamError
from jobex.jobs.models import JobStatus, PartialResult, ProgressEvent, StatusEvent
from jobex.jobs.registry import JobRegistry


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def statuses(events):
    return [e.status for e in events if isinstance(e, StatusEvent)]


class TestJobLifecycle:
    """Tests for status transitions"""

    def setup_method(self):
        self.registry = JobRegistry()

    @pytest.mark.asyncio
    async def test_create(self):
        job = await self.registry.create(owner_id='user_1', file_name='lease.pdf', file_size=10)

        assert job.id.startswith('job_')
        assert job.status == JobStatus.QUEUED
        assert job.progress_percent == 0
        assert job.cancel_requested is False
        assert job.id in self.registry

    @pytest.mark.asyncio
    async def test_happy_path(self):
        job = await self.registry.create()

        running = await self.registry.mark_running(job.id)
        assert running.status == JobStatus.RUNNING
        assert running.started_at is not None

        done = await self.registry.mark_completed(job.id, 'doc_1')
        assert done.status == JobStatus.COMPLETED
        assert done.progress_percent == 100
        assert done.completed_at is not None
        assert await self.registry.get_result(job.id) == 'doc_1'

        events = await self.registry.get_events(job.id)
        assert statuses(events) == [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_mark_running_requires_queued(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)

        with pytest.raises(InvalidStateError):
            await self.registry.mark_running(job.id)

    @pytest.mark.asyncio
    async def test_complete_requires_running(self):
        job = await self.registry.create()

        with pytest.raises(InvalidStateError):
            await self.registry.mark_completed(job.id, 'doc_1')

    @pytest.mark.asyncio
    async def test_duplicate_terminal_signal_is_noop(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)
        first = await self.registry.mark_completed(job.id, 'doc_1')

        again = await self.registry.mark_completed(job.id, 'doc_2')
        failed = await self.registry.mark_failed(job.id, RetryableUpstreamError("late"))
        cancelled = await self.registry.mark_cancelled(job.id)

        for snapshot in (again, failed, cancelled):
            assert snapshot.status == JobStatus.COMPLETED
            assert snapshot.result == 'doc_1'
            assert snapshot.completed_at == first.completed_at
        assert len(statuses(await self.registry.get_events(job.id))) == 3

    @pytest.mark.asyncio
    async def test_mark_failed_stores_classified_error(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)

        failed = await self.registry.mark_failed(job.id, RetryableUpstreamError("throttled"))

        assert failed.status == JobStatus.FAILED
        assert failed.error == {'code': 'upstream_error', 'message': 'throttled', 'retryable': True}
        assert failed.message == 'throttled'
        assert await self.registry.get_result(job.id) is None

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        assert await self.registry.get_status('job_missing') is None
        with pytest.raises(NotFoundError):
            await self.registry.mark_running('job_missing')


class TestProgressAndPartials:
    """Tests for progress clamping and partial results"""

    def setup_method(self):
        self.registry = JobRegistry()

    async def running_job(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)
        return job

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self):
        job = await self.running_job()

        await self.registry.record_progress(job.id, 'recognition', 40, 'ocr')
        snapshot = await self.registry.record_progress(job.id, 'extraction', 20, 'late update')

        assert snapshot.progress_percent == 40
        assert snapshot.current_stage == 'extraction'
        percents = [e.percent for e in await self.registry.get_events(job.id) if isinstance(e, ProgressEvent)]
        assert percents == [40, 40]

    @pytest.mark.asyncio
    async def test_progress_bounded_to_100(self):
        job = await self.running_job()
        snapshot = await self.registry.record_progress(job.id, 'assembly', 250)
        assert snapshot.progress_percent == 100

    @pytest.mark.asyncio
    async def test_progress_after_terminal_fails(self):
        job = await self.running_job()
        await self.registry.mark_cancelled(job.id)

        with pytest.raises(InvalidStateError):
            await self.registry.record_progress(job.id, 'extraction', 60)
        with pytest.raises(InvalidStateError):
            await self.registry.record_partial_result(job.id, 'rent', {})

    @pytest.mark.asyncio
    async def test_partial_result_upserts_by_section(self):
        job = await self.running_job()

        await self.registry.record_partial_result(job.id, 'rent', {'amount': 1})
        await self.registry.record_partial_result(job.id, 'parties', {'landlord': 'ALPHA'})
        await self.registry.record_partial_result(job.id, 'rent', {'amount': 2})

        partials = await self.registry.get_partial_results(job.id)
        assert partials == {'rent': {'amount': 2}, 'parties': {'landlord': 'ALPHA'}}
        events = await self.registry.get_events(job.id)
        assert [e.section for e in events if isinstance(e, PartialResult)] == ['rent', 'parties']

    @pytest.mark.asyncio
    async def test_partials_survive_failure(self):
        job = await self.running_job()
        await self.registry.record_partial_result(job.id, 'rent', {'amount': 1})

        await self.registry.mark_failed(job.id, {'code': 'upstream_error', 'message': 'boom'})

        assert await self.registry.get_partial_results(job.id) == {'rent': {'amount': 1}}

    @pytest.mark.asyncio
    async def test_snapshots_are_detached(self):
        job = await self.running_job()
        snapshot = await self.registry.record_partial_result(job.id, 'rent', {'amount': 1})

        snapshot.partial_results['injected'] = True

        assert 'injected' not in await self.registry.get_partial_results(job.id)


class TestCancellation:
    """Tests for cancellation requests"""

    def setup_method(self):
        self.clock = FakeClock()
        self.registry = JobRegistry(clock=self.clock)

    @pytest.mark.asyncio
    async def test_cancel_queued_job_goes_straight_to_cancelled(self):
        job = await self.registry.create()

        cancelled = await self.registry.request_cancellation(job.id, requested_by='user_1')

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.cancel_requested_by == 'user_1'
        with pytest.raises(InvalidStateError):
            await self.registry.mark_running(job.id)
        events = await self.registry.get_events(job.id)
        assert statuses(events) == [JobStatus.QUEUED, JobStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_cancel_running_is_idempotent(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)

        first = await self.registry.request_cancellation(job.id, requested_by='user_1')
        self.clock.advance(5)
        second = await self.registry.request_cancellation(job.id, requested_by='admin')

        assert first.status == second.status == JobStatus.RUNNING
        assert second.cancel_requested is True
        assert second.cancel_requested_at == first.cancel_requested_at
        assert second.cancel_requested_by == 'user_1'
        assert await self.registry.is_cancel_requested(job.id) is True

    @pytest.mark.asyncio
    async def test_cancel_after_terminal_fails(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)
        await self.registry.mark_completed(job.id, 'doc_1')

        with pytest.raises(InvalidStateError):
            await self.registry.request_cancellation(job.id)

        status = await self.registry.get_status(job.id)
        assert status.cancel_requested is False


class TestSubscriptions:
    """Tests for event log replay"""

    def setup_method(self):
        self.registry = JobRegistry()

    @pytest.mark.asyncio
    async def test_subscribe_replays_then_follows(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)

        queue = await self.registry.subscribe(job.id)
        await self.registry.record_partial_result(job.id, 'rent', {'amount': 1})

        received = [queue.get_nowait() for _ in range(queue.qsize())]
        assert [type(e) for e in received] == [StatusEvent, StatusEvent, PartialResult]

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        job = await self.registry.create()
        queue = await self.registry.subscribe(job.id)
        self.registry.unsubscribe(job.id, queue)

        await self.registry.mark_running(job.id)

        assert queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_get_events_since(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)
        await self.registry.record_progress(job.id, 'acquisition', 10)

        events = await self.registry.get_events(job.id, since=2)

        assert len(events) == 1
        assert isinstance(events[0], ProgressEvent)

    @pytest.mark.asyncio
    async def test_concurrent_writers_keep_order(self):
        job = await self.registry.create()
        await self.registry.mark_running(job.id)

        await asyncio.gather(*[
            self.registry.record_progress(job.id, 'extraction', p) for p in range(0, 100, 5)
        ])

        percents = [e.percent for e in await self.registry.get_events(job.id) if isinstance(e, ProgressEvent)]
        assert percents == sorted(percents)


class TestLookups:
    """Tests for listing and duplicate detection"""

    def setup_method(self):
        self.clock = FakeClock()
        self.registry = JobRegistry(clock=self.clock)

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first(self):
        ids = []
        for _ in range(3):
            ids.append((await self.registry.create(owner_id='user_1')).id)
            self.clock.advance(1)
        await self.registry.create(owner_id='user_2')

        jobs = await self.registry.list_jobs(owner_id='user_1')

        assert [job.id for job in jobs] == list(reversed(ids))
        assert len(await self.registry.list_jobs(owner_id='user_1', limit=2)) == 2
        assert len(await self.registry.list_jobs()) == 4

    @pytest.mark.asyncio
    async def test_find_active_duplicate(self):
        job = await self.registry.create(owner_id='user_1', file_name='lease.pdf', file_size=100)

        found = await self.registry.find_active_duplicate('user_1', 'lease.pdf', 100, 120)
        assert found.id == job.id

        assert await self.registry.find_active_duplicate('user_2', 'lease.pdf', 100, 120) is None
        assert await self.registry.find_active_duplicate('user_1', 'lease.pdf', 101, 120) is None

    @pytest.mark.asyncio
    async def test_duplicate_window_expires(self):
        await self.registry.create(owner_id='user_1', file_name='lease.pdf', file_size=100)
        self.clock.advance(121)

        assert await self.registry.find_active_duplicate('user_1', 'lease.pdf', 100, 120) is None

    @pytest.mark.asyncio
    async def test_finished_jobs_are_not_duplicates(self):
        job = await self.registry.create(owner_id='user_1', file_name='lease.pdf', file_size=100)
        await self.registry.request_cancellation(job.id)

        assert await self.registry.find_active_duplicate('user_1', 'lease.pdf', 100, 120) is None
