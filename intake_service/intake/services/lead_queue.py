"""
Durable FIFO queue of lead delivery jobs, backed by the ``LeadJob`` table.

Job lifecycle::

    queued -> processing -> completed
                         -> queued (retry, back of the queue) while attempts < max_attempts
                         -> dead_letter once attempts == max_attempts
                         -> failed for permanent (non-retryable) errors

Claiming a job is a single conditional UPDATE, so two workers can never both
move the same job to ``processing``. Jobs stuck in ``processing`` longer than
the visibility timeout are reclaimed and count as a failed attempt.
"""
import copy
import logging
import time
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import Count
from django.utils import timezone

from intake.models import LeadJob

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (
    LeadJob.Status.COMPLETED,
    LeadJob.Status.FAILED,
    LeadJob.Status.DEAD_LETTER,
)


class LeadQueueError(Exception):
    """Raised for operations that are not allowed in a job's current state."""
    pass


class LeadQueue:
    def __init__(self, max_attempts: Optional[int] = None, retention: Optional[int] = None,
                 poll_interval: Optional[float] = None, visibility_timeout: Optional[int] = None):
        self.max_attempts = max_attempts or settings.LEAD_QUEUE_MAX_ATTEMPTS
        self.retention = retention if retention is not None else settings.LEAD_JOB_RETENTION
        self.poll_interval = poll_interval if poll_interval is not None else settings.LEAD_QUEUE_POLL_INTERVAL
        self.visibility_timeout = (
            visibility_timeout if visibility_timeout is not None else settings.LEAD_QUEUE_VISIBILITY_TIMEOUT
        )

    def _retention_deadline(self):
        return timezone.now() + timedelta(seconds=self.retention)

    def enqueue(self, session_id: str, lead_data: dict, category: str) -> str:
        """Append a job to the tail of the queue and return its id."""
        now = timezone.now()
        job = LeadJob.objects.create(
            job_id=f"job_{uuid.uuid4().hex}",
            session_id=session_id,
            category=category,
            lead_data=copy.deepcopy(lead_data),
            status=LeadJob.Status.QUEUED,
            max_attempts=self.max_attempts,
            enqueued_at=now,
            expires_at=self._retention_deadline(),
        )
        logger.info(f"Enqueued {job.job_id} for session {session_id} ({category})")
        return job.job_id

    def _claim_next(self) -> Optional[LeadJob]:
        while True:
            candidate = (
                LeadJob.objects.filter(status=LeadJob.Status.QUEUED)
                .order_by('enqueued_at', 'id')
                .values_list('pk', flat=True)
                .first()
            )
            if candidate is None:
                return None
            claimed = LeadJob.objects.filter(pk=candidate, status=LeadJob.Status.QUEUED).update(
                status=LeadJob.Status.PROCESSING,
                claimed_at=timezone.now(),
                updated_at=timezone.now(),
            )
            if claimed:
                job = LeadJob.objects.get(pk=candidate)
                logger.info(f"Claimed {job.job_id} (attempt {job.attempts + 1}/{job.max_attempts})")
                return job
            # Another worker claimed it between the read and the update; try the next one.

    def dequeue(self, timeout: Optional[float] = None) -> Optional[LeadJob]:
        """
        Claim the oldest queued job, waiting up to ``timeout`` seconds for one.

        A ``timeout`` of 0 returns immediately.
        """
        timeout = settings.LEAD_QUEUE_DEQUEUE_TIMEOUT if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            job = self._claim_next()
            remaining = deadline - time.monotonic()
            if job is not None or remaining <= 0:
                return job
            time.sleep(min(self.poll_interval, remaining))

    def get_job(self, job_id: str) -> Optional[LeadJob]:
        return LeadJob.objects.filter(job_id=job_id).first()

    def mark_completed(self, job_id: str, vendor_response=None) -> LeadJob:
        with transaction.atomic():
            job = LeadJob.objects.select_for_update().get(job_id=job_id)
            job.status = LeadJob.Status.COMPLETED
            job.vendor_response = vendor_response
            job.error = None
            job.completed_at = timezone.now()
            job.expires_at = self._retention_deadline()
            job.save()
        logger.info(f"{job_id} completed")
        return job

    def mark_failed(self, job_id: str, error: str, retryable: bool = True,
                    claimed_before=None) -> LeadJob:
        """
        Record a failed attempt.

        The job goes back to the tail of the queue while attempts remain,
        to ``dead_letter`` once ``max_attempts`` is reached, or straight to
        ``failed`` when the error is not retryable. Only jobs in
        ``processing`` are affected; ``claimed_before`` further restricts the
        update to jobs claimed before that instant.
        """
        job, _ = self._record_failure(job_id, error, retryable, claimed_before)
        return job

    def _record_failure(self, job_id: str, error: str, retryable: bool = True,
                        claimed_before=None) -> Tuple[LeadJob, bool]:
        """Apply a failure; the flag is False when the job was left untouched."""
        with transaction.atomic():
            job = LeadJob.objects.select_for_update().get(job_id=job_id)
            if job.status != LeadJob.Status.PROCESSING:
                logger.warning(f"Ignoring failure report for {job_id} in status {job.status}")
                return job, False
            if claimed_before is not None and job.claimed_at and job.claimed_at >= claimed_before:
                return job, False

            job.attempts = min(job.attempts + 1, job.max_attempts)
            job.error = error
            job.claimed_at = None
            if not retryable:
                job.status = LeadJob.Status.FAILED
                job.expires_at = self._retention_deadline()
            elif job.attempts >= job.max_attempts:
                job.status = LeadJob.Status.DEAD_LETTER
                job.expires_at = self._retention_deadline()
            else:
                job.status = LeadJob.Status.QUEUED
                job.enqueued_at = timezone.now()
            job.save()

        if job.status == LeadJob.Status.QUEUED:
            logger.warning(f"{job_id} failed (attempt {job.attempts}/{job.max_attempts}), requeued: {error}")
        else:
            logger.error(f"{job_id} moved to {job.status} after {job.attempts} attempts: {error}")
        return job, True

    def reclaim_stale(self, visibility_timeout: Optional[int] = None) -> List[LeadJob]:
        """
        Fail jobs that have been ``processing`` longer than the visibility timeout.

        Returns the reclaimed jobs in their new state (queued again or dead-lettered).
        """
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout
        cutoff = timezone.now() - timedelta(seconds=timeout)
        stale_ids = list(
            LeadJob.objects.filter(status=LeadJob.Status.PROCESSING, claimed_at__lt=cutoff)
            .values_list('job_id', flat=True)
        )
        reclaimed = []
        for job_id in stale_ids:
            job, changed = self._record_failure(
                job_id,
                f"Processing timed out after {timeout}s without a result",
                claimed_before=cutoff,
            )
            if changed:
                reclaimed.append(job)
        if reclaimed:
            logger.warning(f"Reclaimed {len(reclaimed)} stale jobs")
        return reclaimed

    def requeue(self, job_id: str) -> LeadJob:
        """Manually put a dead-lettered or failed job back on the queue with its attempts reset."""
        with transaction.atomic():
            job = LeadJob.objects.select_for_update().filter(job_id=job_id).first()
            if job is None:
                raise LeadQueueError(f"Job {job_id} not found")
            if job.status not in (LeadJob.Status.DEAD_LETTER, LeadJob.Status.FAILED):
                raise LeadQueueError(f"Job {job_id} is {job.status}, only failed jobs can be requeued")
            job.status = LeadJob.Status.QUEUED
            job.attempts = 0
            job.error = None
            job.claimed_at = None
            job.enqueued_at = timezone.now()
            job.expires_at = self._retention_deadline()
            job.save()
        logger.info(f"{job_id} manually requeued")
        return job

    def stats(self) -> dict:
        counts = {status: 0 for status in LeadJob.Status.values}
        for row in LeadJob.objects.order_by().values('status').annotate(total=Count('id')):
            counts[row['status']] = row['total']
        counts['total'] = sum(counts.values())
        return counts

    def cleanup(self) -> int:
        """Delete finished jobs whose retention window has passed."""
        _, per_model = LeadJob.objects.filter(
            status__in=TERMINAL_STATUSES,
            expires_at__lte=timezone.now(),
        ).delete()
        deleted = per_model.get(LeadJob._meta.label, 0)
        if deleted:
            logger.info(f"Cleaned up {deleted} expired lead jobs")
        return deleted
