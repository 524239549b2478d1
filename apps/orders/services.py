"""
Order services for the Bookstore Platform.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any

from django.db import transaction

from apps.carts.models import Cart
from apps.carts.repository import CartPromotionRepository
from apps.common.types import Err, Ok, Result
from apps.promotions.errors import PromotionErrorKind
from apps.promotions.services import Promotions

from .models import Order, OrderItem, OrderStatus

logger = logging.getLogger(__name__)


class CheckoutService:
    """Turns a cart into an order and consumes its promotion."""

    def __init__(self, promotions: Promotions | None = None) -> None:
        self.promotions = promotions or Promotions()
        self.carts = CartPromotionRepository()

    @transaction.atomic
    def place_order(self, cart_id: uuid.UUID, user: Any) -> Result[Order, str]:
        """
        Place an order for the user's cart.

        The cart's discount is advisory: the promotion is validated again here
        and the recomputed amount is what the order and the usage record carry.
        The usage row is written in this transaction, so a rollback of the order
        leaves the promotion's counter untouched.
        """
        # Lock the cart row so concurrent checkouts of the same cart serialize
        if not Cart.objects.select_for_update().filter(pk=cart_id, user=user).exists():
            return Err("Cart not found")
        cart = self.carts.load_with_items(cart_id)
        if cart is None or cart.snapshot.is_empty:
            return Err("Cart is empty")

        discount = Decimal("0")
        promotion_id = None
        if cart.promo_code:
            validation = self.promotions.validator.validate(cart.promo_code, cart.snapshot, user.pk)
            if validation.is_err():
                error = validation.unwrap_err()
                logger.info(f"🏷️ [Checkout] Promotion {cart.promo_code} no longer valid for cart {cart_id}: {error}")
                return Err(str(error))
            result = validation.unwrap()
            discount = result.discount_amount
            promotion_id = result.promotion.id

        order = Order.objects.create(
            user=user,
            status=OrderStatus.PENDING,
            subtotal=cart.subtotal,
            discount_amount=discount,
            promo_code=cart.promo_code or "",
        )
        OrderItem.objects.bulk_create(
            [
                OrderItem(
                    order=order,
                    book_id=line.book_id,
                    category_id=line.category_id,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                )
                for line in cart.lines
            ]
        )

        if promotion_id is not None:
            recorded = self.promotions.record_usage(order.id, promotion_id, user.pk, discount)
            if recorded.is_err() and recorded.unwrap_err().kind != PromotionErrorKind.DUPLICATE_USAGE:
                # Lost the race for the last use: nothing of this order survives
                transaction.set_rollback(True)
                return Err(str(recorded.unwrap_err()))

        Cart.objects.get(pk=cart_id).items.all().delete()
        self.carts.clear_promotion_fields(cart_id)

        logger.info(
            f"✅ [Checkout] Placed order {order.order_number} for cart {cart_id} "
            f"(subtotal {order.subtotal}, discount {order.discount_amount})"
        )
        return Ok(order)
