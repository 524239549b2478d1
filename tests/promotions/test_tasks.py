"""
Tests for the reconciler's django-q tasks and management commands.
"""

from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.cache import cache
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone
from django_q.models import Schedule

from apps.carts.models import Cart
from apps.promotions.models import PromotionRemovalAudit, RemovalReason
from apps.promotions.tasks import (
    RECONCILE_LOCK_KEY,
    RECONCILE_SCHEDULE_NAME,
    reconcile_cart_promotions,
    reconcile_cart_promotions_async,
    setup_promotion_scheduled_tasks,
)
from tests.factories import create_cart, create_promotion, create_user


class ReconcileTaskTests(TestCase):
    def setUp(self):
        now = timezone.now()
        create_promotion(code="LAPSED", starts_at=now - timedelta(days=10), expires_at=now - timedelta(days=1))
        self.cart = create_cart(create_user(), [(1000, 1)])
        Cart.objects.filter(pk=self.cart.pk).update(promo_code="LAPSED", discount_amount=Decimal("200"))

    def test_task_runs_a_pass(self):
        result = reconcile_cart_promotions()

        self.assertTrue(result["success"])
        self.assertEqual(result["results"]["removed"], 1)
        self.assertEqual(result["results"]["reasons"], {RemovalReason.EXPIRED.value: 1})
        self.assertTrue(PromotionRemovalAudit.objects.filter(cart_id=self.cart.id).exists())
        self.assertIsNone(cache.get(RECONCILE_LOCK_KEY))

    def test_concurrent_run_is_skipped(self):
        cache.add(RECONCILE_LOCK_KEY, True, 60)

        result = reconcile_cart_promotions()

        self.assertEqual(result, {"success": True, "message": "Already running"})
        self.cart.refresh_from_db()
        self.assertEqual(self.cart.promo_code, "LAPSED")

    def test_failure_is_reported_and_lock_released(self):
        with patch("apps.promotions.tasks.CartReconciler.run_once", side_effect=RuntimeError("boom")):
            result = reconcile_cart_promotions()

        self.assertFalse(result["success"])
        self.assertEqual(result["error"], "boom")
        self.assertIsNone(cache.get(RECONCILE_LOCK_KEY))

    def test_async_wrapper_queues_task(self):
        with patch("apps.promotions.tasks.async_task", return_value="task-id") as queued:
            self.assertEqual(reconcile_cart_promotions_async(25), "task-id")

        queued.assert_called_once()
        self.assertEqual(queued.call_args.args, ("apps.promotions.tasks.reconcile_cart_promotions", 25))


class ScheduleSetupTests(TestCase):
    def test_schedule_registered_once(self):
        first = setup_promotion_scheduled_tasks()
        second = setup_promotion_scheduled_tasks()

        self.assertEqual(first, {"reconcile_carts": "created"})
        self.assertEqual(second, {"reconcile_carts": "already_exists"})
        scheduled = Schedule.objects.get(name=RECONCILE_SCHEDULE_NAME)
        self.assertEqual(scheduled.func, "apps.promotions.tasks.reconcile_cart_promotions")
        self.assertEqual(scheduled.schedule_type, Schedule.MINUTES)

    def test_setup_command(self):
        out = StringIO()

        call_command("setup_promotion_tasks", stdout=out)

        self.assertIn("reconcile_carts: created", out.getvalue())
        self.assertTrue(Schedule.objects.filter(name=RECONCILE_SCHEDULE_NAME).exists())


class ReconcilerCommandTests(TestCase):
    def test_single_pass(self):
        now = timezone.now()
        create_promotion(code="LAPSED", starts_at=now - timedelta(days=10), expires_at=now - timedelta(days=1))
        cart = create_cart(create_user(), [(1000, 1)])
        Cart.objects.filter(pk=cart.pk).update(promo_code="LAPSED", discount_amount=Decimal("200"))
        out = StringIO()

        call_command("run_promotion_reconciler", "--once", stdout=out)

        self.assertIn("Processed 1 carts: 1 removed", out.getvalue())
        self.assertIn("expired: 1", out.getvalue())
