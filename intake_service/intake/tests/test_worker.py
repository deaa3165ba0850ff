"""
Tests for the lead delivery worker.
"""
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest
from django.utils import timezone

from intake.models import ChatSession, DeliveryAttempt, LeadJob, TranscriptEntry
from intake.services.vendor_client import LeadProsperClient
from intake.services.worker import FAILURE_TRANSCRIPT, SUCCESS_TRANSCRIPT, LeadWorker

SESSION_ID = 'worker-session-0001'


@pytest.fixture
def client():
    return LeadProsperClient(url='https://vendor.test/direct_post', token='t', timeout=1,
                             max_attempts=1, backoff_base=0, backoff_max=0, total_timeout=30)


@pytest.fixture
def worker(queue, client, store, registry):
    return LeadWorker(queue=queue, client=client, store=store, registry=registry, concurrency=1, field_map={})


@pytest.fixture
def submitted_session(store):
    store.create(session_id=SESSION_ID)
    store.update(SESSION_ID, stage='SUBMITTED', main_category='general', lead_status='queued')
    return SESSION_ID


def vendor_returns(*responses):
    return patch('intake.services.vendor_client.httpx.post', side_effect=list(responses))


@pytest.mark.django_db
class TestProcessJob:
    """Tests for single-job processing and session write-back."""

    def test_success(self, worker, queue, store, lead_data, submitted_session):
        job_id = queue.enqueue(submitted_session, lead_data, 'personal_injury_law')

        with vendor_returns(httpx.Response(200, json={'status': 'ACCEPTED', 'lead_id': 'lp-42'})) as mock_post:
            outcomes = worker.process_batch(5)

        assert outcomes[0].status == LeadJob.Status.COMPLETED
        assert outcomes[0].lead_id == 'lp-42'
        sent = mock_post.call_args.kwargs['json']
        assert sent['phone'] == '(555) 123-4567'
        assert sent['date_of_incident'] == '03/14/2024'

        session = store.get(submitted_session)
        assert session.lead_status == ChatSession.LeadStatus.SENT
        assert session.vendor_response['lead_id'] == 'lp-42'
        assert session.transcript.filter(role=TranscriptEntry.Role.SYSTEM, text=SUCCESS_TRANSCRIPT).exists()

        attempt = DeliveryAttempt.objects.get(job__job_id=job_id)
        assert attempt.attempt_no == 1
        assert attempt.success is True
        assert attempt.response_status == 200

    def test_permanent_rejection(self, worker, queue, store, lead_data, submitted_session):
        job_id = queue.enqueue(submitted_session, lead_data, 'general')

        with vendor_returns(httpx.Response(401, json={'status': 'ERROR', 'message': 'bad key'})):
            worker.process_batch(5)

        job = queue.get_job(job_id)
        assert job.status == LeadJob.Status.FAILED
        session = store.get(submitted_session)
        assert session.lead_status == ChatSession.LeadStatus.FAILED
        assert session.vendor_response == {'error': 'Client error: 401', 'attempts': 1}

    def test_missing_phone_fails_without_http(self, worker, queue, store, lead_data, submitted_session):
        del lead_data['phone']
        job_id = queue.enqueue(submitted_session, lead_data, 'general')

        with vendor_returns() as mock_post:
            worker.process_batch(5)

        assert mock_post.call_count == 0
        assert queue.get_job(job_id).status == LeadJob.Status.FAILED
        assert store.get(submitted_session).lead_status == ChatSession.LeadStatus.FAILED

    def test_transient_failure_is_requeued(self, worker, queue, store, lead_data, submitted_session):
        job_id = queue.enqueue(submitted_session, lead_data, 'general')

        with vendor_returns(httpx.Response(503, text='down')):
            outcomes = worker.process_batch(5)

        assert outcomes[0].status == LeadJob.Status.QUEUED
        assert queue.get_job(job_id).attempts == 1
        assert store.get(submitted_session).lead_status == ChatSession.LeadStatus.QUEUED

    def test_unexpected_error_counts_as_failed_attempt(self, worker, queue, lead_data, submitted_session):
        job_id = queue.enqueue(submitted_session, lead_data, 'general')

        with patch.object(worker.client, 'submit', side_effect=RuntimeError('boom')):
            outcomes = worker.process_batch(5)

        assert outcomes[0].status == LeadJob.Status.QUEUED
        assert 'boom' in queue.get_job(job_id).error

    def test_missing_session_is_skipped(self, worker, queue, lead_data):
        queue.enqueue('session-gone-0001', lead_data, 'general')
        with vendor_returns(httpx.Response(200, json={'status': 'ACCEPTED', 'lead_id': 'lp-1'})):
            outcomes = worker.process_batch(5)
        assert outcomes[0].status == LeadJob.Status.COMPLETED


@pytest.mark.django_db
class TestRunBatches:
    """Tests for batch processing."""

    def test_three_transient_failures_dead_letter(self, worker, queue, store, lead_data, submitted_session):
        job_id = queue.enqueue(submitted_session, lead_data, 'general')

        with vendor_returns(*[httpx.Response(503, text='down')] * 3):
            summary = worker.run_batches(max_jobs=10, batch_size=1)

        job = queue.get_job(job_id)
        assert job.status == LeadJob.Status.DEAD_LETTER
        assert job.attempts == 3
        assert summary.processed == 3
        assert summary.requeued == 2
        assert summary.dead_lettered == 1
        assert list(job.delivery_attempts.values_list('attempt_no', flat=True)) == [1, 2, 3]

        session = store.get(submitted_session)
        assert session.lead_status == ChatSession.LeadStatus.FAILED
        assert session.transcript.filter(text=FAILURE_TRANSCRIPT).count() == 1

    def test_stops_when_queue_is_drained(self, worker, queue, lead_data):
        for index in range(3):
            queue.enqueue(f'session-{index:04d}', lead_data, 'general')
        accepted = [httpx.Response(200, json={'status': 'ACCEPTED', 'lead_id': f'lp-{n}'}) for n in range(3)]

        with vendor_returns(*accepted):
            summary = worker.run_batches(max_jobs=10, batch_size=2)

        assert summary.processed == 3
        assert summary.completed == 3
        assert summary.batches == 2

    def test_respects_max_jobs(self, worker, queue, lead_data):
        for index in range(3):
            queue.enqueue(f'session-{index:04d}', lead_data, 'general')
        accepted = [httpx.Response(200, json={'status': 'ACCEPTED', 'lead_id': f'lp-{n}'}) for n in range(2)]

        with vendor_returns(*accepted):
            summary = worker.run_batches(max_jobs=2, batch_size=5)

        assert summary.processed == 2
        assert queue.stats()['queued'] == 1

    def test_empty_queue(self, worker):
        summary = worker.run_batches(max_jobs=10, batch_size=5)
        assert summary.processed == 0
        assert summary.batches == 0
        assert summary.as_dict()['outcomes'] == []


@pytest.mark.django_db
class TestReclaim:
    """Tests for reclaiming abandoned jobs."""

    def test_reclaim_writes_back_dead_letter(self, queue, client, store, registry, lead_data, submitted_session):
        queue.max_attempts = 1
        worker = LeadWorker(queue=queue, client=client, store=store, registry=registry, concurrency=1)
        job_id = queue.enqueue(submitted_session, lead_data, 'general')
        queue.dequeue(timeout=0)
        LeadJob.objects.filter(job_id=job_id).update(claimed_at=timezone.now() - timedelta(hours=1))

        assert worker.reclaim_stale() == 1
        assert store.get(submitted_session).lead_status == ChatSession.LeadStatus.FAILED


class TestRunLoop:
    """Tests for the long-running loop's cooperative shutdown."""

    def test_returns_immediately_when_already_stopped(self):
        queue = MagicMock()
        worker = LeadWorker(queue=queue, client=MagicMock(), store=MagicMock(), concurrency=2, field_map={})
        stop = threading.Event()
        stop.set()

        assert worker.run(stop, poll_timeout=0.01, shutdown_timeout=0.1) == 0
        queue.dequeue.assert_not_called()

    def test_stops_between_polls(self):
        stop = threading.Event()
        queue = MagicMock()

        def empty_poll(timeout):
            stop.set()
            return None

        queue.dequeue.side_effect = empty_poll
        worker = LeadWorker(queue=queue, client=MagicMock(), store=MagicMock(), concurrency=2, field_map={})

        assert worker.run(stop, poll_timeout=0.01, shutdown_timeout=0.1) == 0
        queue.dequeue.assert_called_once_with(timeout=0.01)
