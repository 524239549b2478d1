"""
Promotion background tasks.

Django-Q2 entry points for the cart reconciler. Long-running deployments use
the ``run_promotion_reconciler`` command instead; the scheduled task covers
installations that only run a django-q cluster.
"""

from __future__ import annotations

import logging
from typing import Any

from django.core.cache import cache
from django_q.models import Schedule
from django_q.tasks import async_task, schedule

from .reconciler import CartReconciler

logger = logging.getLogger(__name__)

# Task configuration
TASK_TIME_LIMIT = 300  # 5 minutes
RECONCILE_LOCK_KEY = "promotions:reconcile_cart_promotions_lock"
RECONCILE_SCHEDULE_NAME = "promotions-reconcile-carts"


def reconcile_cart_promotions(batch_size: int | None = None) -> dict[str, Any]:
    """
    Run one reconciler pass over promoted carts.

    Returns:
        Dictionary with the pass statistics
    """
    # cache.add is atomic: only one pass runs at a time across workers
    if not cache.add(RECONCILE_LOCK_KEY, True, TASK_TIME_LIMIT):
        logger.info("⏭️ [Reconciler] Reconciliation already running, skipping")
        return {"success": True, "message": "Already running"}

    try:
        stats = CartReconciler(batch_size=batch_size).run_once()
        return {"success": True, "results": stats.to_dict()}
    except Exception as e:
        logger.exception(f"💥 [Reconciler] Critical error in cart reconciliation: {e}")
        return {"success": False, "error": str(e)}
    finally:
        cache.delete(RECONCILE_LOCK_KEY)


# ===============================================================================
# TASK QUEUE WRAPPER FUNCTIONS
# ===============================================================================


def reconcile_cart_promotions_async(batch_size: int | None = None) -> str:
    """Queue a reconciliation pass."""
    return async_task("apps.promotions.tasks.reconcile_cart_promotions", batch_size, timeout=TASK_TIME_LIMIT)


# ===============================================================================
# SCHEDULED TASKS SETUP
# ===============================================================================


def setup_promotion_scheduled_tasks() -> dict[str, str]:
    """Set up the promotion scheduled tasks."""
    tasks_created = {}

    if not Schedule.objects.filter(name=RECONCILE_SCHEDULE_NAME).exists():
        schedule(
            "apps.promotions.tasks.reconcile_cart_promotions",
            schedule_type=Schedule.MINUTES,
            minutes=1,
            name=RECONCILE_SCHEDULE_NAME,
            cluster="bookstore-cluster",
        )
        tasks_created["reconcile_carts"] = "created"
    else:
        tasks_created["reconcile_carts"] = "already_exists"

    logger.info(f"✅ [PromotionTasks] Scheduled tasks setup: {tasks_created}")
    return tasks_created
