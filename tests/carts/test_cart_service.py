"""
Tests for cart mutations and the promotion re-check that follows them.
"""

import uuid
from decimal import Decimal

from django.test import TestCase

from apps.carts.models import Cart, CartItem
from apps.carts.services import CartItemData, CartService
from apps.promotions.errors import PromotionErrorKind
from apps.promotions.services import Promotions
from tests.factories import FICTION, SCIENCE, StubOrderHistory, create_cart, create_promotion, create_user


class CartServiceTests(TestCase):
    def setUp(self):
        self.promotions = Promotions(order_history=StubOrderHistory())
        self.service = CartService(self.promotions)
        self.user = create_user()

    def test_add_item_creates_line_and_bumps_version(self):
        cart = create_cart(self.user)
        book_id = uuid.uuid4()

        outcome = self.service.add_item(cart.id, CartItemData(book_id=book_id, unit_price=Decimal("1500"), quantity=2))

        self.assertTrue(outcome.is_ok())
        self.assertEqual(outcome.unwrap().cart.subtotal, Decimal("3000"))
        cart.refresh_from_db()
        self.assertEqual(cart.version, 1)

    def test_adding_same_book_increments_quantity(self):
        cart = create_cart(self.user)
        book_id = uuid.uuid4()

        self.service.add_item(cart.id, CartItemData(book_id=book_id, unit_price=Decimal("1500")))
        self.service.add_item(cart.id, CartItemData(book_id=book_id, unit_price=Decimal("1500"), quantity=2))

        self.assertEqual(CartItem.objects.get(cart=cart, book_id=book_id).quantity, 3)

    def test_adding_item_refreshes_discount(self):
        create_promotion(code="SAVE20")
        cart = create_cart(self.user, [(1000, 1)])
        self.promotions.apply_to_cart(cart.id, self.user.pk, "SAVE20")

        outcome = self.service.add_item(cart.id, CartItemData(book_id=uuid.uuid4(), unit_price=Decimal("4000")))

        view = outcome.unwrap().cart
        self.assertEqual(view.promo_code, "SAVE20")
        self.assertEqual(view.discount_amount, Decimal("1000"))

    def test_removing_item_below_minimum_drops_code(self):
        create_promotion(code="MIN5000", min_order_amount=Decimal("5000"))
        cart = create_cart(self.user, [(3000, 1), (3000, 1)])
        self.promotions.apply_to_cart(cart.id, self.user.pk, "MIN5000")
        book_id = cart.items.first().book_id

        outcome = self.service.remove_item(cart.id, book_id).unwrap()

        self.assertEqual(outcome.dropped.kind, PromotionErrorKind.MIN_ORDER_NOT_MET)
        self.assertIsNone(outcome.cart.promo_code)
        self.assertEqual(Cart.objects.get(pk=cart.pk).discount_amount, Decimal("0"))

    def test_category_change_drops_restricted_code(self):
        create_promotion(code="SCIFI", applicable_category_ids=[str(SCIENCE)])
        cart = create_cart(self.user, [(1000, 1, SCIENCE)])
        self.promotions.apply_to_cart(cart.id, self.user.pk, "SCIFI")
        science_book = cart.items.get().book_id

        self.service.add_item(cart.id, CartItemData(book_id=uuid.uuid4(), unit_price=Decimal("800"), category_id=FICTION))
        still_applied = Cart.objects.get(pk=cart.pk).promo_code
        outcome = self.service.remove_item(cart.id, science_book).unwrap()

        self.assertEqual(still_applied, "SCIFI")
        self.assertEqual(outcome.dropped.kind, PromotionErrorKind.CATEGORY_NOT_APPLICABLE)

    def test_update_quantity(self):
        cart = create_cart(self.user, [(1000, 1)])
        book_id = cart.items.get().book_id

        outcome = self.service.update_quantity(cart.id, book_id, 4).unwrap()

        self.assertEqual(outcome.cart.subtotal, Decimal("4000"))

    def test_invalid_mutations(self):
        cart = create_cart(self.user, [(1000, 1)])

        self.assertEqual(self.service.update_quantity(cart.id, uuid.uuid4(), 2).unwrap_err(), "Item not in cart")
        self.assertEqual(self.service.update_quantity(cart.id, uuid.uuid4(), -1).unwrap_err(), "Quantity cannot be negative")
        self.assertEqual(self.service.update_quantity(uuid.uuid4(), uuid.uuid4(), 1).unwrap_err(), "Cart not found")
        self.assertEqual(
            self.service.add_item(cart.id, CartItemData(book_id=uuid.uuid4(), unit_price=Decimal("1"), quantity=0)).unwrap_err(),
            "Quantity must be at least 1",
        )
