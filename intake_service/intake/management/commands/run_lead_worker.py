"""
Long-running lead delivery worker.

SIGINT/SIGTERM only set a stop event; the worker finishes in-flight jobs
(up to the drain timeout) before exiting.
"""
import logging
import signal
import threading

from django.core.management.base import BaseCommand

from intake.services.worker import LeadWorker

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Continuously deliver queued leads to the vendor"

    def add_arguments(self, parser):
        parser.add_argument('--concurrency', type=int, default=None,
                            help="Jobs delivered in parallel (default: LEAD_WORKER_CONCURRENCY)")
        parser.add_argument('--poll-timeout', type=float, default=None,
                            help="Seconds to wait for a job before checking for shutdown")
        parser.add_argument('--shutdown-timeout', type=float, default=None,
                            help="Seconds to let in-flight jobs finish after a stop signal")

    def handle(self, *args, **options):
        stop_event = threading.Event()

        def request_stop(signum, frame):
            logger.info(f"Received signal {signum}, stopping lead worker")
            stop_event.set()

        signal.signal(signal.SIGINT, request_stop)
        signal.signal(signal.SIGTERM, request_stop)

        worker = LeadWorker(concurrency=options['concurrency'])
        reclaimed = worker.reclaim_stale()
        if reclaimed:
            self.stdout.write(f"Reclaimed {reclaimed} stale jobs")

        started = worker.run(
            stop_event,
            poll_timeout=options['poll_timeout'],
            shutdown_timeout=options['shutdown_timeout'],
        )
        self.stdout.write(self.style.SUCCESS(f"Lead worker stopped after {started} jobs"))
