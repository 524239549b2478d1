"""
Tests for applying, removing and re-checking a cart's promotion.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

from django.test import TestCase

from apps.carts.models import Cart
from apps.promotions.errors import PromotionErrorKind
from apps.promotions.models import DiscountType
from apps.promotions.services import Promotions
from tests.factories import (
    FICTION,
    SCIENCE,
    FixedClock,
    StubOrderHistory,
    create_cart,
    create_promotion,
    create_user,
)


class CartBindingTestCase(TestCase):
    def setUp(self):
        self.clock = FixedClock()
        self.order_history = StubOrderHistory()
        self.promotions = Promotions(order_history=self.order_history, clock=self.clock)
        self.user = create_user()


class ApplyTests(CartBindingTestCase):
    """Tests for Promotions.apply_to_cart."""

    def test_apply_stores_code_discount_and_metadata(self):
        promotion = create_promotion(code="SAVE20", max_discount_amount=Decimal("50000"))
        cart = create_cart(self.user, [(200000, 2)])

        view = self.promotions.apply_to_cart(cart.id, self.user.pk, "save20").unwrap()

        self.assertEqual(view.promo_code, "SAVE20")
        self.assertEqual(view.discount_amount, Decimal("50000"))
        self.assertEqual(view.total, Decimal("350000"))
        self.assertEqual(view.version, 1)
        self.assertEqual(view.promo_metadata["promotion_id"], str(promotion.id))
        self.assertEqual(view.promo_metadata["discount_type"], DiscountType.PERCENTAGE)
        self.assertEqual(view.promo_metadata["applied_at"], view.promo_metadata["last_checked_at"])

    def test_apply_replaces_existing_code(self):
        create_promotion(code="FIRST10", discount_value=Decimal("10"))
        create_promotion(code="SECOND30", discount_value=Decimal("30"))
        cart = create_cart(self.user, [(1000, 1)])

        self.promotions.apply_to_cart(cart.id, self.user.pk, "FIRST10")
        view = self.promotions.apply_to_cart(cart.id, self.user.pk, "SECOND30").unwrap()

        self.assertEqual(view.promo_code, "SECOND30")
        self.assertEqual(view.discount_amount, Decimal("300"))

    def test_rejected_code_leaves_cart_unchanged(self):
        create_promotion(code="MIN200", min_order_amount=Decimal("200000"))
        cart = create_cart(self.user, [(150000, 1)])

        error = self.promotions.apply_to_cart(cart.id, self.user.pk, "MIN200").unwrap_err()

        self.assertEqual(error.kind, PromotionErrorKind.MIN_ORDER_NOT_MET)
        self.assertEqual(error.details["needed_amount"], Decimal("50000"))
        cart.refresh_from_db()
        self.assertIsNone(cart.promo_code)
        self.assertEqual(cart.version, 0)

    def test_empty_cart(self):
        create_promotion(code="SAVE20")
        cart = create_cart(self.user)

        error = self.promotions.apply_to_cart(cart.id, self.user.pk, "SAVE20").unwrap_err()

        self.assertEqual(error.kind, PromotionErrorKind.CART_EMPTY)

    def test_unknown_cart(self):
        error = self.promotions.apply_to_cart(uuid.uuid4(), self.user.pk, "SAVE20").unwrap_err()

        self.assertEqual(error.kind, PromotionErrorKind.CART_NOT_FOUND)

    def test_someone_elses_cart_looks_missing(self):
        create_promotion(code="SAVE20")
        cart = create_cart(create_user("owner"), [(1000, 1)])

        error = self.promotions.apply_to_cart(cart.id, self.user.pk, "SAVE20").unwrap_err()

        self.assertEqual(error.kind, PromotionErrorKind.CART_NOT_FOUND)

    def test_concurrent_cart_change_is_a_conflict(self):
        create_promotion(code="SAVE20")
        cart = create_cart(self.user, [(1000, 1)])
        carts = self.promotions.carts
        original_write = carts.write_promotion_fields

        def write_after_concurrent_edit(cart_id, expected_version, *args):
            Cart.objects.filter(pk=cart_id).update(version=expected_version + 1)
            return original_write(cart_id, expected_version, *args)

        carts.write_promotion_fields = write_after_concurrent_edit

        error = self.promotions.apply_to_cart(cart.id, self.user.pk, "SAVE20").unwrap_err()

        self.assertEqual(error.kind, PromotionErrorKind.UPDATE_CONFLICT)
        cart.refresh_from_db()
        self.assertIsNone(cart.promo_code)


class RemoveTests(CartBindingTestCase):
    """Tests for Promotions.remove_from_cart."""

    def test_remove_clears_association(self):
        create_promotion(code="SAVE20")
        cart = create_cart(self.user, [(1000, 1)])
        self.promotions.apply_to_cart(cart.id, self.user.pk, "SAVE20")

        view = self.promotions.remove_from_cart(cart.id, self.user.pk).unwrap()

        self.assertIsNone(view.promo_code)
        self.assertEqual(view.discount_amount, Decimal("0"))
        self.assertEqual(view.promo_metadata, {})

    def test_remove_is_idempotent(self):
        cart = create_cart(self.user, [(1000, 1)])

        first = self.promotions.remove_from_cart(cart.id, self.user.pk).unwrap()
        second = self.promotions.remove_from_cart(cart.id, self.user.pk).unwrap()

        self.assertIsNone(first.promo_code)
        self.assertEqual(first.version, second.version)


class RevalidateTests(CartBindingTestCase):
    """Tests for Promotions.revalidate_cart."""

    def test_refreshes_discount_after_cart_change(self):
        create_promotion(code="SAVE20")
        cart = create_cart(self.user, [(1000, 1)])
        self.promotions.apply_to_cart(cart.id, self.user.pk, "SAVE20")
        cart.items.update(quantity=3)

        outcome = self.promotions.revalidate_cart(cart.id).unwrap()

        self.assertIsNone(outcome.dropped)
        self.assertEqual(outcome.cart.discount_amount, Decimal("600"))

    def test_drops_code_that_no_longer_applies(self):
        create_promotion(code="MIN100", min_order_amount=Decimal("100000"))
        cart = create_cart(self.user, [(60000, 2)])
        self.promotions.apply_to_cart(cart.id, self.user.pk, "MIN100")
        cart.items.update(quantity=1)

        outcome = self.promotions.revalidate_cart(cart.id).unwrap()

        self.assertEqual(outcome.dropped.kind, PromotionErrorKind.MIN_ORDER_NOT_MET)
        self.assertIsNone(outcome.cart.promo_code)
        self.assertEqual(outcome.cart.discount_amount, Decimal("0"))

    def test_drops_expired_code(self):
        promotion = create_promotion(code="SHORT")
        cart = create_cart(self.user, [(1000, 1)])
        self.promotions.apply_to_cart(cart.id, self.user.pk, "SHORT")
        self.clock.moment = promotion.expires_at + timedelta(seconds=1)

        outcome = self.promotions.revalidate_cart(cart.id).unwrap()

        self.assertEqual(outcome.dropped.kind, PromotionErrorKind.EXPIRED)

    def test_cart_without_code_is_left_alone(self):
        cart = create_cart(self.user, [(1000, 1)])

        outcome = self.promotions.revalidate_cart(cart.id).unwrap()

        self.assertIsNone(outcome.dropped)
        self.assertEqual(outcome.cart.version, 0)


class AvailableForCartTests(CartBindingTestCase):
    """Tests for Promotions.available_for_cart."""

    def test_lists_qualifying_promotions_biggest_first(self):
        create_promotion(code="TEN", discount_value=Decimal("10"))
        create_promotion(code="FLAT500", discount_type=DiscountType.FIXED, discount_value=Decimal("500"))
        create_promotion(code="THIRTY", discount_value=Decimal("30"))
        create_promotion(code="SCIENCE", applicable_category_ids=[str(SCIENCE)])
        create_promotion(code="BIGSPEND", min_order_amount=Decimal("999999"))
        create_promotion(code="OFF", is_active=False)
        cart = create_cart(self.user, [(1000, 2, FICTION)])

        available = self.promotions.available_for_cart(cart.id, self.user.pk).unwrap()

        self.assertEqual([item.promotion.code for item in available], ["THIRTY", "FLAT500", "TEN"])
        self.assertEqual(available[0].discount_amount, Decimal("600"))
        self.assertEqual(available[0].final_amount, Decimal("1400"))

    def test_first_order_promotions_hidden_from_returning_customers(self):
        create_promotion(code="WELCOME", first_order_only=True)
        cart = create_cart(self.user, [(1000, 1)])
        self.order_history.users_with_orders.add(self.user.pk)

        self.assertEqual(self.promotions.available_for_cart(cart.id, self.user.pk).unwrap(), [])
