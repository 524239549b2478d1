"""
Tests for promotion code validation.
"""

import itertools
import uuid
from datetime import timedelta
from decimal import Decimal

from django.test import TestCase

from apps.promotions.errors import PromotionErrorKind
from apps.promotions.interfaces import CartLine, CartSnapshot
from apps.promotions.models import DiscountType
from apps.promotions.repository import PromotionRepository
from apps.promotions.services import PromotionValidator
from tests.factories import (
    FICTION,
    HISTORY,
    SCIENCE,
    FixedClock,
    StubOrderHistory,
    create_order,
    create_promotion,
    create_user,
    set_current_uses,
)


def snapshot(*lines):
    """Cart snapshot from ``(unit_price, quantity[, category_id])`` tuples."""
    return CartSnapshot.from_lines(
        CartLine(
            book_id=uuid.uuid4(),
            category_id=rest[0] if rest else None,
            unit_price=Decimal(str(price)),
            quantity=quantity,
        )
        for price, quantity, *rest in lines
    )


class ValidatorTestCase(TestCase):
    def setUp(self):
        self.clock = FixedClock()
        self.order_history = StubOrderHistory()
        self.validator = PromotionValidator(PromotionRepository(), self.order_history, self.clock)


class SuccessfulValidationTests(ValidatorTestCase):
    def test_percentage_with_cap(self):
        create_promotion(
            code="SAVE20",
            discount_value=Decimal("20"),
            max_discount_amount=Decimal("50000"),
            min_order_amount=Decimal("100000"),
        )

        result = self.validator.validate("SAVE20", snapshot((400000, 1)))

        self.assertTrue(result.is_ok())
        validation = result.unwrap()
        self.assertEqual(validation.discount_amount, Decimal("50000"))
        self.assertEqual(validation.final_amount, Decimal("350000"))
        self.assertIsNone(validation.remaining_global_uses)
        self.assertTrue(validation.breakdown.capped)

    def test_fixed_discount_exceeding_subtotal(self):
        create_promotion(code="BIGFIXED", discount_type=DiscountType.FIXED, discount_value=Decimal("100000"))

        validation = self.validator.validate("BIGFIXED", snapshot((25000, 2))).unwrap()

        self.assertEqual(validation.discount_amount, Decimal("50000"))
        self.assertEqual(validation.final_amount, Decimal("0"))

    def test_code_is_case_insensitive_and_trimmed(self):
        create_promotion(code="SAVE20")

        result = self.validator.validate("  save20 ", snapshot((1000, 1)))

        self.assertTrue(result.is_ok())
        self.assertEqual(result.unwrap().promotion.code, "SAVE20")

    def test_remaining_uses_reported(self):
        promotion = create_promotion(code="LIMITED", max_uses=10, max_uses_per_user=3)
        set_current_uses(promotion, 4)
        user = create_user()

        validation = self.validator.validate("LIMITED", snapshot((1000, 1)), user_id=user.pk).unwrap()

        self.assertEqual(validation.remaining_global_uses, 6)
        self.assertEqual(validation.remaining_user_uses, 3)

    def test_anonymous_gets_full_per_user_allowance(self):
        create_promotion(code="ANON", max_uses_per_user=2)

        validation = self.validator.validate("ANON", snapshot((1000, 1))).unwrap()

        self.assertEqual(validation.remaining_user_uses, 2)

    def test_window_bounds_are_inclusive(self):
        promotion = create_promotion(code="EDGE")

        self.clock.moment = promotion.starts_at
        self.assertTrue(self.validator.validate("EDGE", snapshot((1000, 1))).is_ok())

        self.clock.moment = promotion.expires_at
        self.assertTrue(self.validator.validate("EDGE", snapshot((1000, 1))).is_ok())

    def test_subtotal_equal_to_minimum_is_accepted(self):
        create_promotion(code="MIN", min_order_amount=Decimal("200000"))

        self.assertTrue(self.validator.validate("MIN", snapshot((100000, 2))).is_ok())


class RejectionTests(ValidatorTestCase):
    def assertRejected(self, result, kind):
        self.assertTrue(result.is_err(), f"expected {kind.value}, got success")
        self.assertEqual(result.unwrap_err().kind, kind)
        return result.unwrap_err()

    def test_unknown_code(self):
        self.assertRejected(self.validator.validate("NOPE", snapshot((1000, 1))), PromotionErrorKind.NOT_FOUND)

    def test_blank_code(self):
        self.assertRejected(self.validator.validate("   ", snapshot((1000, 1))), PromotionErrorKind.NOT_FOUND)

    def test_inactive_promotion_looks_like_unknown_code(self):
        create_promotion(code="OFF", is_active=False)

        self.assertRejected(self.validator.validate("OFF", snapshot((1000, 1))), PromotionErrorKind.NOT_FOUND)

    def test_not_started(self):
        promotion = create_promotion(
            code="SOON",
            starts_at=self.clock.now() + timedelta(days=1),
            expires_at=self.clock.now() + timedelta(days=5),
        )

        error = self.assertRejected(self.validator.validate("SOON", snapshot((1000, 1))), PromotionErrorKind.NOT_STARTED)
        self.assertEqual(error.details["starts_at"], promotion.starts_at)

    def test_expired(self):
        promotion = create_promotion(code="WELCOME")
        self.clock.moment = promotion.expires_at + timedelta(microseconds=1)

        error = self.assertRejected(self.validator.validate("WELCOME", snapshot((1000, 1))), PromotionErrorKind.EXPIRED)
        self.assertEqual(error.details["expired_at"], promotion.expires_at)

    def test_exhausted(self):
        promotion = create_promotion(code="GONE", max_uses=10)
        set_current_uses(promotion, 10)

        error = self.assertRejected(
            self.validator.validate("GONE", snapshot((1000, 1))), PromotionErrorKind.USAGE_LIMIT_EXCEEDED
        )
        self.assertEqual(error.details, {"max_uses": 10, "current_uses": 10})

    def test_user_limit(self):
        promotion = create_promotion(code="ONCE", max_uses_per_user=1)
        user = create_user()
        order = create_order(user)
        promotion.usages.create(user=user, order=order, discount_amount=Decimal("100"))

        error = self.assertRejected(
            self.validator.validate("ONCE", snapshot((1000, 1)), user_id=user.pk),
            PromotionErrorKind.USER_LIMIT_EXCEEDED,
        )
        self.assertEqual(error.details["user_usage_count"], 1)

    def test_below_minimum_reports_shortfall(self):
        create_promotion(code="MIN200", min_order_amount=Decimal("200000"))

        error = self.assertRejected(
            self.validator.validate("MIN200", snapshot((150000, 1))), PromotionErrorKind.MIN_ORDER_NOT_MET
        )
        self.assertEqual(error.details["needed_amount"], Decimal("50000"))
        self.assertEqual(error.details["current_subtotal"], Decimal("150000"))

    def test_empty_cart_fails_positive_minimum(self):
        create_promotion(code="MIN1", min_order_amount=Decimal("1"))

        self.assertRejected(self.validator.validate("MIN1", snapshot()), PromotionErrorKind.MIN_ORDER_NOT_MET)

    def test_first_order_only_rejects_returning_customer(self):
        create_promotion(code="FIRST", first_order_only=True)
        user = create_user()
        self.order_history.users_with_orders.add(user.pk)

        self.assertRejected(
            self.validator.validate("FIRST", snapshot((1000, 1)), user_id=user.pk), PromotionErrorKind.FIRST_ORDER_ONLY
        )

    def test_first_order_only_accepts_new_customer(self):
        create_promotion(code="FIRST", first_order_only=True)
        user = create_user()

        self.assertTrue(self.validator.validate("FIRST", snapshot((1000, 1)), user_id=user.pk).is_ok())

    def test_category_not_applicable(self):
        create_promotion(code="SCIFI", applicable_category_ids=[str(SCIENCE), str(HISTORY)])

        error = self.assertRejected(
            self.validator.validate("SCIFI", snapshot((1000, 1, FICTION))), PromotionErrorKind.CATEGORY_NOT_APPLICABLE
        )
        self.assertEqual(error.details["applicable_categories"], sorted([str(SCIENCE), str(HISTORY)]))

    def test_one_matching_category_is_enough(self):
        create_promotion(code="SCIFI", applicable_category_ids=[str(SCIENCE)])

        result = self.validator.validate("SCIFI", snapshot((1000, 1, FICTION), (500, 1, SCIENCE)))

        self.assertTrue(result.is_ok())

    def test_checks_short_circuit_in_order(self):
        # Exhausted and below minimum: the usage limit is reported first
        promotion = create_promotion(code="BOTH", max_uses=1, min_order_amount=Decimal("999999"))
        set_current_uses(promotion, 1)

        self.assertRejected(self.validator.validate("BOTH", snapshot((10, 1))), PromotionErrorKind.USAGE_LIMIT_EXCEEDED)


class ValidationPropertyTests(ValidatorTestCase):
    def test_amounts_hold_across_rule_combinations(self):
        user = create_user()
        categories = {"universal": [], "overlapping": [str(SCIENCE)], "disjoint": [str(HISTORY)]}
        subtotals = {"below_min": Decimal("600"), "at_min": Decimal("1000"), "above_min": Decimal("2500")}
        combinations = itertools.product(
            (DiscountType.PERCENTAGE, DiscountType.FIXED),
            (None, Decimal("300")),
            subtotals,
            categories,
            (False, True),
        )

        for index, (discount_type, cap, subtotal_key, category_key, signed_in) in enumerate(combinations):
            with self.subTest(
                discount_type=discount_type, cap=cap, subtotal=subtotal_key, categories=category_key, user=signed_in
            ):
                code = f"SWEEP{index}"
                create_promotion(
                    code=code,
                    discount_type=discount_type,
                    discount_value=Decimal("15") if discount_type == DiscountType.PERCENTAGE else Decimal("700"),
                    max_discount_amount=cap,
                    min_order_amount=Decimal("1000"),
                    applicable_category_ids=categories[category_key],
                    max_uses_per_user=2,
                )
                subtotal = subtotals[subtotal_key]
                cart = snapshot((subtotal - 100, 1, FICTION), (100, 1, SCIENCE))

                result = self.validator.validate(code, cart, user_id=user.pk if signed_in else None)

                if subtotal_key == "below_min":
                    self.assertEqual(result.unwrap_err().kind, PromotionErrorKind.MIN_ORDER_NOT_MET)
                    continue
                if category_key == "disjoint":
                    self.assertEqual(result.unwrap_err().kind, PromotionErrorKind.CATEGORY_NOT_APPLICABLE)
                    continue

                validation = result.unwrap()
                self.assertEqual(validation.subtotal, subtotal)
                self.assertEqual(validation.final_amount + validation.discount_amount, subtotal)
                self.assertGreater(validation.discount_amount, Decimal("0"))
                self.assertLessEqual(validation.discount_amount, subtotal)
                if discount_type == DiscountType.PERCENTAGE and cap is not None:
                    self.assertLessEqual(validation.discount_amount, cap)
                self.assertEqual(validation.remaining_user_uses, 2)
