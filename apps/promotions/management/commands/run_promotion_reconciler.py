"""
Management command for running the promotion cart reconciler.

Usage:
    python manage.py run_promotion_reconciler                  # run until SIGINT/SIGTERM
    python manage.py run_promotion_reconciler --workers 2 --interval 10
    python manage.py run_promotion_reconciler --once           # single pass, print stats
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Any

from django.core.management.base import BaseCommand, CommandParser

from apps.promotions.reconciler import CartReconciler, ReconcilerWorker

logger = logging.getLogger(__name__)

JOIN_POLL_SECONDS = 1.0


class Command(BaseCommand):
    """Runs CartReconciler loops on dedicated worker threads."""

    help = "Remove promotions that are no longer eligible from shopping carts"

    def add_arguments(self, parser: CommandParser) -> None:
        """Add command arguments."""
        parser.add_argument(
            "--workers",
            type=int,
            default=1,
            help="Number of reconciler threads, each owning a share of the carts (default: 1)",
        )
        parser.add_argument(
            "--interval",
            type=float,
            help="Seconds between passes (default: PROMOTIONS['RECONCILER_INTERVAL_SECONDS'])",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            help="Carts per pass (default: PROMOTIONS['RECONCILER_BATCH_SIZE'])",
        )
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run a single pass and exit",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        """Execute the command."""
        if options["once"]:
            stats = CartReconciler(batch_size=options["batch_size"], interval=options["interval"]).run_once()
            self.stdout.write(
                self.style.SUCCESS(
                    f"✅ Processed {stats.total_processed} carts: {stats.removed} removed, "
                    f"{stats.skipped} skipped, {stats.errors} errors"
                )
            )
            for reason, count in sorted(stats.reasons.items()):
                self.stdout.write(f"   {reason}: {count}")
            return

        stop_event = threading.Event()

        def _request_stop(signum: int, _frame: Any) -> None:
            logger.info(f"🛑 [Reconciler] Received signal {signum}, stopping after the current cart")
            stop_event.set()

        signal.signal(signal.SIGINT, _request_stop)
        signal.signal(signal.SIGTERM, _request_stop)

        # Each worker owns a disjoint share of the carts
        worker_count = max(options["workers"], 1)
        workers = [
            ReconcilerWorker(
                CartReconciler(
                    batch_size=options["batch_size"],
                    interval=options["interval"],
                    shard=(index, worker_count) if worker_count > 1 else None,
                ),
                stop_event,
                name=f"promo-reconciler-{index}",
            )
            for index in range(worker_count)
        ]
        for worker in workers:
            worker.start()
        self.stdout.write(self.style.SUCCESS(f"🔄 Started {len(workers)} reconciler worker(s)"))

        # Poll so the main thread stays responsive to signals
        while any(worker.is_alive() for worker in workers):
            for worker in workers:
                worker.join(JOIN_POLL_SECONDS)

        self.stdout.write(self.style.SUCCESS("🛑 Reconciler stopped"))
