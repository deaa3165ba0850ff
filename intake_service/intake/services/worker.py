"""
Queue worker and batch processor for lead delivery.

``LeadWorker`` pulls jobs from the ``LeadQueue``, posts them with the
``LeadProsperClient`` and writes the outcome back to both the job and the
originating chat session.
"""
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import List, NamedTuple, Optional

from django.conf import settings
from django.db import close_old_connections, connection

from intake.models import ChatSession, DeliveryAttempt, LeadJob, TranscriptEntry
from intake.services.lead_queue import LeadQueue
from intake.services.mapping import MissingRequiredFieldError, map_to_vendor
from intake.services.schema_registry import get_registry
from intake.services.sessions import SessionStore
from intake.services.vendor_client import AttemptRecord, LeadProsperClient

logger = logging.getLogger(__name__)

SUCCESS_TRANSCRIPT = "Lead successfully submitted to attorneys"
FAILURE_TRANSCRIPT = "Lead could not be delivered to attorneys"


class JobOutcome(NamedTuple):
    job_id: str
    status: str
    lead_id: Optional[str] = None
    error: Optional[str] = None


class BatchSummary(NamedTuple):
    processed: int
    completed: int
    requeued: int
    dead_lettered: int
    failed: int
    batches: int
    outcomes: List[JobOutcome]

    def as_dict(self) -> dict:
        data = self._asdict()
        data['outcomes'] = [outcome._asdict() for outcome in self.outcomes]
        return data


class LeadWorker:
    def __init__(self, queue: Optional[LeadQueue] = None, client: Optional[LeadProsperClient] = None,
                 store: Optional[SessionStore] = None, registry=None, concurrency: Optional[int] = None,
                 field_map: Optional[dict] = None):
        self.queue = queue or LeadQueue()
        self.client = client or LeadProsperClient()
        self.store = store or SessionStore()
        self.registry = registry
        self.concurrency = concurrency if concurrency is not None else settings.LEAD_WORKER_CONCURRENCY
        self.field_map = field_map if field_map is not None else settings.LEADPROSPER_FIELD_MAP

    def _field_formats(self, category: str) -> dict:
        registry = self.registry or get_registry()
        if not registry.has_category(category):
            return {}
        return registry.field_formats(category)

    def process_job(self, job: LeadJob) -> JobOutcome:
        """Deliver one claimed job and record the outcome."""
        logger.info(f"Processing {job.job_id} for session {job.session_id}")
        try:
            payload, _ = map_to_vendor(job.lead_data, self.field_map, self._field_formats(job.category))
        except MissingRequiredFieldError as e:
            job = self.queue.mark_failed(job.job_id, str(e), retryable=False)
            self._write_back(job)
            return JobOutcome(job.job_id, job.status, error=job.error)

        previous_attempts = job.delivery_attempts.count()

        def record_attempt(attempt: AttemptRecord) -> None:
            DeliveryAttempt.objects.create(
                job=job,
                attempt_no=previous_attempts + attempt.attempt_no,
                request_payload=payload,
                response_status=attempt.status_code,
                response_body=attempt.body,
                error_message=attempt.error,
                success=attempt.success,
            )

        result = self.client.submit(payload, on_attempt=record_attempt)

        if result.success:
            response = dict(result.response or {})
            response.setdefault('lead_id', result.lead_id)
            job = self.queue.mark_completed(job.job_id, vendor_response=response)
        else:
            job = self.queue.mark_failed(job.job_id, result.error, retryable=result.retryable)

        self._write_back(job)
        return JobOutcome(job.job_id, job.status, lead_id=result.lead_id, error=job.error)

    def _process_safely(self, job: LeadJob) -> JobOutcome:
        try:
            return self.process_job(job)
        except Exception as e:
            logger.exception(f"Unexpected error processing {job.job_id}")
            job = self.queue.mark_failed(job.job_id, f"Unexpected error: {e}")
            self._write_back(job)
            return JobOutcome(job.job_id, job.status, error=job.error)

    def _process_in_thread(self, job: LeadJob) -> JobOutcome:
        close_old_connections()
        try:
            return self._process_safely(job)
        finally:
            connection.close()

    def _write_back(self, job: LeadJob) -> None:
        """Reflect a terminal job state on the originating session."""
        if job.status == LeadJob.Status.COMPLETED:
            lead_status, text = ChatSession.LeadStatus.SENT, SUCCESS_TRANSCRIPT
            vendor_response = job.vendor_response
        elif job.status in (LeadJob.Status.DEAD_LETTER, LeadJob.Status.FAILED):
            lead_status, text = ChatSession.LeadStatus.FAILED, FAILURE_TRANSCRIPT
            vendor_response = {'error': job.error, 'attempts': job.attempts}
        else:
            return

        session = self.store.update(job.session_id, lead_status=lead_status, vendor_response=vendor_response)
        if session is None:
            logger.info(f"Session {job.session_id} for {job.job_id} no longer exists, skipping write-back")
            return
        self.store.append_transcript(
            job.session_id,
            TranscriptEntry.Role.SYSTEM,
            text,
            metadata={'job_id': job.job_id, 'status': job.status, 'error': job.error},
        )
        logger.info(f"Session {job.session_id} lead_status -> {lead_status}")

    def process_batch(self, batch_size: int) -> List[JobOutcome]:
        """Claim up to ``batch_size`` jobs and process them concurrently."""
        jobs = []
        for _ in range(batch_size):
            job = self.queue.dequeue(timeout=0)
            if job is None:
                break
            jobs.append(job)
        if not jobs:
            return []

        if self.concurrency <= 1 or len(jobs) == 1:
            return [self._process_safely(job) for job in jobs]

        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(jobs)),
                                thread_name_prefix='lead-batch') as executor:
            return list(executor.map(self._process_in_thread, jobs))

    def run_batches(self, max_jobs: Optional[int] = None, batch_size: Optional[int] = None) -> BatchSummary:
        """
        Process up to ``max_jobs`` jobs in batches of ``batch_size``.

        Stops early once a batch comes back smaller than requested, which
        means the queue is drained.
        """
        max_jobs = max_jobs or settings.LEAD_BATCH_MAX_JOBS
        batch_size = batch_size or settings.LEAD_BATCH_SIZE
        outcomes: List[JobOutcome] = []
        batches = 0

        while len(outcomes) < max_jobs:
            size = min(batch_size, max_jobs - len(outcomes))
            batch = self.process_batch(size)
            if batch:
                batches += 1
            outcomes.extend(batch)
            if len(batch) < size:
                break

        summary = BatchSummary(
            processed=len(outcomes),
            completed=sum(1 for o in outcomes if o.status == LeadJob.Status.COMPLETED),
            requeued=sum(1 for o in outcomes if o.status == LeadJob.Status.QUEUED),
            dead_lettered=sum(1 for o in outcomes if o.status == LeadJob.Status.DEAD_LETTER),
            failed=sum(1 for o in outcomes if o.status == LeadJob.Status.FAILED),
            batches=batches,
            outcomes=outcomes,
        )
        logger.info(
            f"Batch run finished: {summary.processed} processed, {summary.completed} completed, "
            f"{summary.requeued} requeued, {summary.dead_lettered} dead-lettered"
        )
        return summary

    def reclaim_stale(self) -> int:
        """Requeue or dead-letter jobs abandoned in ``processing``."""
        reclaimed = self.queue.reclaim_stale()
        for job in reclaimed:
            self._write_back(job)
        return len(reclaimed)

    def run(self, stop_event: threading.Event, poll_timeout: Optional[float] = None,
            shutdown_timeout: Optional[float] = None) -> int:
        """
        Long-running worker loop.

        ``stop_event`` is checked between jobs. Once it is set no new jobs are
        claimed and in-flight jobs get ``shutdown_timeout`` seconds to finish;
        anything still running after that is left in ``processing`` for the
        visibility-timeout reclaim.

        Returns the number of jobs handed to the pool.
        """
        poll_timeout = settings.LEAD_QUEUE_DEQUEUE_TIMEOUT if poll_timeout is None else poll_timeout
        shutdown_timeout = settings.LEAD_WORKER_SHUTDOWN_TIMEOUT if shutdown_timeout is None else shutdown_timeout
        slots = max(1, self.concurrency)
        executor = ThreadPoolExecutor(max_workers=slots, thread_name_prefix='lead-worker')
        in_flight = set()
        started = 0
        logger.info(f"Lead worker started with {slots} slots")

        try:
            while not stop_event.is_set():
                in_flight = {future for future in in_flight if not future.done()}
                if len(in_flight) >= slots:
                    wait(in_flight, timeout=poll_timeout, return_when=FIRST_COMPLETED)
                    continue
                job = self.queue.dequeue(timeout=poll_timeout)
                if job is None:
                    continue
                in_flight.add(executor.submit(self._process_in_thread, job))
                started += 1
        finally:
            logger.info(f"Lead worker stopping, draining {len(in_flight)} in-flight jobs")
            _, pending = wait(in_flight, timeout=shutdown_timeout)
            if pending:
                logger.warning(
                    f"{len(pending)} jobs still running after {shutdown_timeout}s; "
                    "they will be reclaimed after the visibility timeout"
                )
            executor.shutdown(wait=False, cancel_futures=True)
        logger.info(f"Lead worker stopped after {started} jobs")
        return started
