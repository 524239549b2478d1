"""
Tests for the background cart reconciler.
"""

import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase

from apps.carts.models import Cart
from apps.carts.repository import CartPromotionRepository
from apps.promotions.errors import PromotionErrorKind
from apps.promotions.models import PromotionRemovalAudit, RemovalReason
from apps.promotions.reconciler import OUTCOME_SKIPPED, CartReconciler
from apps.promotions.repository import PromotionRepository
from apps.promotions.services import Promotions
from tests.factories import (
    FICTION,
    SCIENCE,
    FixedClock,
    StubOrderHistory,
    create_cart,
    create_order,
    create_promotion,
    create_user,
    set_current_uses,
)


class ReconcilerTestCase(TestCase):
    def setUp(self):
        self.clock = FixedClock()
        self.order_history = StubOrderHistory()
        self.promotions = Promotions(order_history=self.order_history, clock=self.clock)
        self.reconciler = CartReconciler(
            store=PromotionRepository(),
            carts=CartPromotionRepository(),
            order_history=self.order_history,
            clock=self.clock,
            batch_size=50,
        )
        self.user = create_user()

    def promoted_cart(self, code="SAVE20", lines=((100000, 1),), user=None):
        cart = create_cart(user or self.user, list(lines))
        self.promotions.apply_to_cart(cart.id, cart.user_id, code).unwrap()
        # Make the cart due for its next check
        self.clock.advance(minutes=1)
        return cart

    def assertRemoved(self, cart, reason):
        cart.refresh_from_db()
        self.assertIsNone(cart.promo_code)
        self.assertEqual(cart.discount_amount, Decimal("0"))
        audit = PromotionRemovalAudit.objects.get(cart_id=cart.id)
        self.assertEqual(audit.reason, reason)
        return audit


class RemovalReasonTests(ReconcilerTestCase):
    """Each rule removes the promotion and leaves an audit row."""

    def test_expired(self):
        promotion = create_promotion(code="SAVE20")
        cart = self.promoted_cart()
        self.clock.moment = promotion.expires_at + timedelta(seconds=1)

        stats = self.reconciler.run_once()

        audit = self.assertRemoved(cart, RemovalReason.EXPIRED)
        self.assertEqual(audit.code, "SAVE20")
        self.assertEqual(audit.discount_at_removal, Decimal("20000"))
        self.assertEqual(audit.user_id, self.user.pk)
        self.assertEqual(audit.metadata["removal_reason"], "expired")
        self.assertEqual(audit.metadata["promotion_id"], str(promotion.id))
        self.assertIn("applied_at", audit.metadata)
        self.assertEqual(stats.removed, 1)
        self.assertEqual(stats.reasons, {"expired": 1})

    def test_expired_code_cannot_be_reapplied_after_removal(self):
        promotion = create_promotion(code="WELCOME")
        cart = self.promoted_cart(code="WELCOME")
        self.clock.moment = promotion.expires_at + timedelta(seconds=1)

        self.reconciler.run_once()
        self.assertRemoved(cart, RemovalReason.EXPIRED)
        result = self.promotions.apply_to_cart(cart.id, self.user.pk, "WELCOME")

        self.assertEqual(result.unwrap_err().kind, PromotionErrorKind.EXPIRED)
        cart.refresh_from_db()
        self.assertIsNone(cart.promo_code)

    def test_deactivated(self):
        promotion = create_promotion(code="SAVE20")
        cart = self.promoted_cart()
        promotion.is_active = False
        promotion.save()

        self.reconciler.run_once()

        audit = self.assertRemoved(cart, RemovalReason.DEACTIVATED)
        self.assertFalse(audit.metadata["is_active"])

    def test_code_that_no_longer_resolves_counts_as_deactivated(self):
        cart = create_cart(self.user, [(1000, 1)])
        Cart.objects.filter(pk=cart.pk).update(promo_code="GHOST", discount_amount=Decimal("100"))

        self.reconciler.run_once()

        audit = self.assertRemoved(cart, RemovalReason.DEACTIVATED)
        self.assertIsNone(audit.metadata["promotion_id"])

    def test_max_uses_reached(self):
        promotion = create_promotion(code="SAVE20", max_uses=5)
        cart = self.promoted_cart()
        set_current_uses(promotion, 5)

        self.reconciler.run_once()

        audit = self.assertRemoved(cart, RemovalReason.MAX_USES_REACHED)
        self.assertEqual(audit.metadata["current_uses"], 5)

    def test_user_limit_reached(self):
        promotion = create_promotion(code="SAVE20", max_uses_per_user=1)
        cart = self.promoted_cart()
        promotion.usages.create(user=self.user, order=create_order(self.user), discount_amount=Decimal("10"))

        self.reconciler.run_once()

        self.assertRemoved(cart, RemovalReason.USER_LIMIT_REACHED)

    def test_min_order_no_longer_met(self):
        create_promotion(code="SAVE20", min_order_amount=Decimal("50000"))
        cart = self.promoted_cart()
        cart.items.update(unit_price=Decimal("40000"))

        self.reconciler.run_once()

        self.assertRemoved(cart, RemovalReason.MIN_ORDER_NO_LONGER_MET)

    def test_first_order_rule_violated(self):
        create_promotion(code="SAVE20", first_order_only=True)
        cart = self.promoted_cart()
        self.order_history.users_with_orders.add(self.user.pk)

        self.reconciler.run_once()

        self.assertRemoved(cart, RemovalReason.FIRST_ORDER_RULE_VIOLATED)

    def test_category_no_longer_applicable(self):
        create_promotion(code="SAVE20", applicable_category_ids=[str(SCIENCE)])
        cart = self.promoted_cart(lines=((1000, 1, SCIENCE),))
        cart.items.update(category_id=FICTION)

        self.reconciler.run_once()

        self.assertRemoved(cart, RemovalReason.CATEGORY_NO_LONGER_APPLICABLE)

    def test_rules_checked_in_order(self):
        # Expired and deactivated at once: deactivation is reported
        promotion = create_promotion(code="SAVE20")
        cart = self.promoted_cart()
        promotion.is_active = False
        promotion.save()
        self.clock.moment = promotion.expires_at + timedelta(days=1)

        self.reconciler.run_once()

        self.assertRemoved(cart, RemovalReason.DEACTIVATED)


class PassBehaviourTests(ReconcilerTestCase):
    """Batch-level behaviour of a reconciliation pass."""

    def test_eligible_cart_is_stamped_not_bumped(self):
        create_promotion(code="SAVE20")
        cart = self.promoted_cart()
        cart.refresh_from_db()
        version = cart.version

        stats = self.reconciler.run_once()

        cart.refresh_from_db()
        self.assertEqual(cart.promo_code, "SAVE20")
        self.assertEqual(cart.version, version)
        self.assertNotEqual(cart.promo_metadata["last_checked_at"], cart.promo_metadata["applied_at"])
        self.assertEqual(stats.total_processed, 1)
        self.assertEqual(stats.removed, 0)
        self.assertFalse(PromotionRemovalAudit.objects.exists())

    def test_recently_checked_carts_are_not_due(self):
        create_promotion(code="SAVE20")
        self.promoted_cart()
        self.reconciler.run_once()

        self.assertEqual(self.reconciler.run_once().total_processed, 0)

    def test_cart_changed_mid_pass_is_skipped(self):
        promotion = create_promotion(code="SAVE20")
        cart = self.promoted_cart()
        view = CartPromotionRepository().load_with_items(cart.id)
        Cart.objects.filter(pk=cart.pk).update(version=view.version + 1)
        self.clock.moment = promotion.expires_at + timedelta(seconds=1)

        outcome, reason = self.reconciler.reconcile_cart(view, promotion)

        self.assertEqual(outcome, OUTCOME_SKIPPED)
        self.assertEqual(reason, RemovalReason.EXPIRED)
        cart.refresh_from_db()
        self.assertEqual(cart.promo_code, "SAVE20")
        self.assertFalse(PromotionRemovalAudit.objects.exists())

    def test_stop_event_halts_between_carts(self):
        create_promotion(code="SAVE20")
        self.promoted_cart()
        stop_event = threading.Event()
        stop_event.set()

        stats = self.reconciler.run_once(stop_event)

        self.assertEqual(stats.total_processed, 0)

    def test_database_error_on_one_cart_does_not_stop_the_pass(self):
        promotion = create_promotion(code="SAVE20")
        first = self.promoted_cart()
        second = self.promoted_cart(user=create_user("second"))
        self.clock.moment = promotion.expires_at + timedelta(seconds=1)
        original = self.reconciler.reconcile_cart

        def flaky(cart, promo):
            if cart.cart_id == first.id:
                raise DatabaseError("canceling statement due to statement timeout")
            return original(cart, promo)

        with patch.object(self.reconciler, "reconcile_cart", side_effect=flaky):
            stats = self.reconciler.run_once()

        self.assertEqual(stats.total_processed, 2)
        self.assertEqual(stats.errors, 1)
        self.assertEqual(stats.removed, 1)
        self.assertRemoved(second, RemovalReason.EXPIRED)

    def test_batch_size_limits_a_pass(self):
        create_promotion(code="SAVE20", max_uses_per_user=5)
        for index in range(3):
            self.promoted_cart(user=create_user(f"reader{index}"))
        self.reconciler.batch_size = 2

        self.assertEqual(self.reconciler.run_once().total_processed, 2)
        self.assertEqual(self.reconciler.run_once().total_processed, 1)

    def test_run_exits_when_stopped(self):
        stop_event = threading.Event()
        stop_event.set()

        self.reconciler.run(stop_event)

    def test_stats_serialise(self):
        create_promotion(code="SAVE20")
        self.promoted_cart()

        stats = self.reconciler.run_once().to_dict()

        self.assertEqual(
            {key: stats[key] for key in ("total_processed", "removed", "skipped", "errors", "reasons")},
            {"total_processed": 1, "removed": 0, "skipped": 0, "errors": 0, "reasons": {}},
        )


class ShardTests(ReconcilerTestCase):
    """Concurrent reconcilers split the due carts between them."""

    def setUp(self):
        super().setUp()
        create_promotion(code="SAVE20", max_uses_per_user=10)
        self.carts = [self.promoted_cart(user=create_user(f"reader{index}")) for index in range(6)]

    def sharded(self, index):
        return CartReconciler(
            store=PromotionRepository(),
            carts=CartPromotionRepository(),
            order_history=self.order_history,
            clock=self.clock,
            batch_size=50,
            shard=(index, 2),
        )

    def test_shards_see_disjoint_carts(self):
        repository = CartPromotionRepository()

        first = {cart.id for cart in repository.promoted_carts_due(50, shard=(0, 2))}
        second = {cart.id for cart in repository.promoted_carts_due(50, shard=(1, 2))}

        self.assertFalse(first & second)
        self.assertEqual(first | second, {cart.id for cart in self.carts})
        self.assertTrue(all(cart_id.int % 2 == 0 for cart_id in first))

    def test_sharded_passes_cover_every_cart_once(self):
        processed = [self.sharded(index).run_once().total_processed for index in range(2)]

        self.assertEqual(sum(processed), len(self.carts))
        self.assertEqual(self.sharded(0).run_once().total_processed, 0)
        self.assertEqual(self.sharded(1).run_once().total_processed, 0)

    def test_invalid_shard_is_rejected(self):
        with self.assertRaises(ValueError):
            CartReconciler(shard=(2, 2))
