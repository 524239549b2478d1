"""
Cart services for the Bookstore Platform.

Item changes bump the cart version and then re-check the cart's promotion:
the stored code is re-validated against the new contents and dropped when
it no longer applies.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.common.types import Err, Ok, Result
from apps.promotions.services import Promotions, RevalidationOutcome

from .models import Cart, CartItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartItemData:
    book_id: uuid.UUID
    unit_price: Decimal
    quantity: int = 1
    category_id: uuid.UUID | None = None


class CartService:
    """Item mutations that keep the cart's promotion consistent."""

    def __init__(self, promotions: Promotions | None = None) -> None:
        self.promotions = promotions or Promotions()

    @staticmethod
    def _touch(cart_id: uuid.UUID) -> None:
        Cart.objects.filter(pk=cart_id).update(version=F("version") + 1, updated_at=timezone.now())

    def _revalidate(self, cart_id: uuid.UUID) -> Result[RevalidationOutcome, str]:
        outcome = self.promotions.revalidate_cart(cart_id)
        if outcome.is_err():
            error = outcome.unwrap_err()
            logger.warning(f"⚠️ [CartService] Promotion re-check failed for cart {cart_id}: {error}")
            return Err(str(error))
        result = outcome.unwrap()
        if result.dropped is not None:
            logger.info(f"🏷️ [CartService] Promotion dropped from cart {cart_id}: {result.dropped.kind.value}")
        return Ok(result)

    @transaction.atomic
    def add_item(self, cart_id: uuid.UUID, item: CartItemData) -> Result[RevalidationOutcome, str]:
        """Add a book or increase its quantity."""
        if item.quantity < 1:
            return Err("Quantity must be at least 1")
        cart = Cart.objects.select_for_update().filter(pk=cart_id).first()
        if cart is None:
            return Err("Cart not found")

        line, created = CartItem.objects.get_or_create(
            cart=cart,
            book_id=item.book_id,
            defaults={"unit_price": item.unit_price, "quantity": item.quantity, "category_id": item.category_id},
        )
        if not created:
            CartItem.objects.filter(pk=line.pk).update(quantity=F("quantity") + item.quantity)
        self._touch(cart_id)
        logger.info(f"🛒 [CartService] Added {item.quantity} x {item.book_id} to cart {cart_id}")
        return self._revalidate(cart_id)

    @transaction.atomic
    def update_quantity(self, cart_id: uuid.UUID, book_id: uuid.UUID, quantity: int) -> Result[RevalidationOutcome, str]:
        """Set a line's quantity; zero removes the line."""
        if quantity < 0:
            return Err("Quantity cannot be negative")
        if not Cart.objects.select_for_update().filter(pk=cart_id).exists():
            return Err("Cart not found")

        lines = CartItem.objects.filter(cart_id=cart_id, book_id=book_id)
        changed = lines.delete()[0] if quantity == 0 else lines.update(quantity=quantity)
        if not changed:
            return Err("Item not in cart")
        self._touch(cart_id)
        return self._revalidate(cart_id)

    def remove_item(self, cart_id: uuid.UUID, book_id: uuid.UUID) -> Result[RevalidationOutcome, str]:
        return self.update_quantity(cart_id, book_id, 0)
