"""
Long-running worker for the periodic reservation jobs.

Jobs:
1. expiry sweep - release expired holds (every EXPIRY_SWEEP_INTERVAL seconds)
2. reconciliation - resolve stale awaiting-payment sessions against the
   payment provider and purge old idempotency records
   (every RECONCILE_INTERVAL seconds)

Run one process per deployment, or several: the jobs tolerate overlap.
"""
import logging
import signal
import time

from django.core.management.base import BaseCommand
from django.db import close_old_connections

from stock_reservations import conf
from stock_reservations.checkout import CheckoutCoordinator
from stock_reservations.reconciliation import ExpirySweeper, ReconciliationSweeper, build_provider

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0


class Command(BaseCommand):
    help = "Run the expiry sweep and payment reconciliation on their intervals."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run each job once and exit.")
        parser.add_argument(
            "--no-reconcile",
            action="store_true",
            help="Only run the expiry sweep (no payment provider needed).",
        )

    def handle(self, *args, **options):
        self._shutdown = False
        coordinator = CheckoutCoordinator()
        jobs = [("expiry", conf.get("EXPIRY_SWEEP_INTERVAL"), self._expiry_job(coordinator))]
        if not options["no_reconcile"]:
            jobs.append(
                ("reconcile", conf.get("RECONCILE_INTERVAL"), self._reconcile_job(coordinator))
            )

        if options["once"]:
            for name, _, job in jobs:
                self._run(name, job)
            return

        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)
        logger.info(f"Reservation workers started: {', '.join(f'{name} every {interval}s' for name, interval, _ in jobs)}")

        next_run = {name: 0.0 for name, _, _ in jobs}
        while not self._shutdown:
            for name, interval, job in jobs:
                if time.monotonic() >= next_run[name]:
                    self._run(name, job)
                    next_run[name] = time.monotonic() + interval
            time.sleep(TICK_SECONDS)

        logger.info("Reservation workers stopped")

    def _handle_shutdown(self, signum, frame):
        logger.info(f"Received signal {signum}, finishing current job before exit")
        self._shutdown = True

    def _run(self, name, job):
        close_old_connections()
        try:
            result = job()
        except Exception:
            # Keep the worker alive; the next interval retries.
            logger.exception(f"Job {name} failed")
            return
        self.stdout.write(f"{name}: {result}")

    def _expiry_job(self, coordinator):
        sweeper = ExpirySweeper(coordinator)

        def job():
            result = sweeper.run()
            return result if result is not None else "skipped, another worker is sweeping"

        return job

    def _reconcile_job(self, coordinator):
        sweeper = ReconciliationSweeper(build_provider(), coordinator)

        def job():
            report = sweeper.run()
            purged = sweeper.purge_idempotency_records()
            return {**report.as_dict(), "idempotency_purged": purged}

        return job
