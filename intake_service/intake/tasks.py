"""
Celery tasks for lead delivery and housekeeping.

Delivery retries live in the lead queue and the vendor client, so these
tasks never use Celery's own retry machinery: a crashed run simply leaves
jobs for the next beat tick or the stale-job reclaim.
"""
import logging

from celery import shared_task

from intake.services.lead_queue import LeadQueue
from intake.services.sessions import SessionStore
from intake.services.worker import LeadWorker

logger = logging.getLogger(__name__)


@shared_task(ignore_result=False)
def process_lead_queue(max_jobs: int = None, batch_size: int = None) -> dict:
    """
    Drain up to ``max_jobs`` queued leads in batches.

    Runs every minute from beat and is kicked right after a chat submission.

    Args:
        max_jobs: Upper bound on jobs processed by this run
        batch_size: Jobs claimed and delivered concurrently per batch
    """
    worker = LeadWorker()
    summary = worker.run_batches(max_jobs=max_jobs, batch_size=batch_size)
    if summary.processed:
        logger.info(
            f"process_lead_queue: {summary.processed} jobs in {summary.batches} batches "
            f"({summary.completed} completed)"
        )
    return summary.as_dict()


@shared_task
def reclaim_stale_lead_jobs() -> int:
    """Requeue or dead-letter jobs stuck in processing past the visibility timeout."""
    reclaimed = LeadWorker().reclaim_stale()
    if reclaimed:
        logger.warning(f"reclaim_stale_lead_jobs: reclaimed {reclaimed} jobs")
    return reclaimed


@shared_task
def purge_expired_sessions() -> int:
    return SessionStore().purge_expired()


@shared_task
def cleanup_lead_jobs() -> int:
    return LeadQueue().cleanup()
