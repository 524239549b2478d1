"""
Cart persistence used by the promotion subsystem.

All writes to the promotion association go through this repository and are
conditional UPDATEs on the cart's version, so a concurrent cart mutation makes
the write a no-op that the caller sees as ``False``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from django.db.models import F, Q
from django.db.models.fields.json import KeyTextTransform
from django.utils import timezone

from apps.promotions.interfaces import CartLine, CartView, format_checked_at

from .models import Cart

ZERO = Decimal("0")


def _to_view(cart: Cart) -> CartView:
    lines = tuple(
        CartLine(
            book_id=item.book_id,
            category_id=item.category_id,
            unit_price=item.unit_price,
            quantity=item.quantity,
        )
        for item in cart.items.all()
    )
    return CartView(
        cart_id=cart.id,
        user_id=cart.user_id,
        version=cart.version,
        lines=lines,
        promo_code=cart.promo_code,
        discount_amount=cart.discount_amount,
        promo_metadata=dict(cart.promo_metadata or {}),
    )


class CartPromotionRepository:
    """Django ORM implementation of the promotion subsystem's CartRepository."""

    def load_with_items(self, cart_id: uuid.UUID) -> CartView | None:
        cart = Cart.objects.prefetch_related("items").filter(pk=cart_id).first()
        if cart is None:
            return None
        return _to_view(cart)

    def write_promotion_fields(
        self,
        cart_id: uuid.UUID,
        expected_version: int,
        code: str,
        discount: Decimal,
        metadata: dict[str, Any],
    ) -> bool:
        updated = Cart.objects.filter(pk=cart_id, version=expected_version).update(
            promo_code=code,
            discount_amount=discount,
            promo_metadata=metadata,
            version=F("version") + 1,
            updated_at=timezone.now(),
        )
        return updated == 1

    def clear_promotion_fields(
        self,
        cart_id: uuid.UUID,
        expected_version: int | None = None,
        expected_code: str | None = None,
    ) -> bool:
        carts = Cart.objects.filter(pk=cart_id)
        if expected_version is not None:
            carts = carts.filter(version=expected_version)
        if expected_code is not None:
            carts = carts.filter(promo_code=expected_code)
        updated = carts.update(
            promo_code=None,
            discount_amount=ZERO,
            promo_metadata={},
            version=F("version") + 1,
            updated_at=timezone.now(),
        )
        return updated == 1

    def mark_checked(self, cart_id: uuid.UUID, expected_version: int, code: str, checked_at: datetime) -> bool:
        cart = Cart.objects.filter(pk=cart_id, version=expected_version, promo_code=code).only("promo_metadata").first()
        if cart is None:
            return False
        metadata = {**(cart.promo_metadata or {}), "last_checked_at": format_checked_at(checked_at)}
        # Version stays put: a concurrent user write still wins against us
        updated = Cart.objects.filter(pk=cart_id, version=expected_version, promo_code=code).update(
            promo_metadata=metadata
        )
        return updated == 1

    def promoted_carts_due(
        self,
        limit: int,
        checked_before: datetime | None = None,
        shard: tuple[int, int] | None = None,
    ) -> list[CartView]:
        carts = (
            Cart.objects.filter(promo_code__isnull=False)
            .annotate(last_checked=KeyTextTransform("last_checked_at", "promo_metadata"))
            .select_related("user")
            .prefetch_related("items")
        )
        if checked_before is not None:
            carts = carts.filter(
                Q(last_checked__isnull=True) | Q(last_checked__lt=format_checked_at(checked_before))
            )
        carts = carts.order_by(F("last_checked").asc(nulls_first=True), "updated_at")
        if shard is None:
            return [_to_view(cart) for cart in carts[:limit]]

        # Scan the window all shards share, keep this shard's carts
        index, count = shard
        mine = [cart for cart in carts[: limit * count] if cart.id.int % count == index]
        return [_to_view(cart) for cart in mine[:limit]]
