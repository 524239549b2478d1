"""
Test data builders shared across the test suite.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from django.contrib.auth import get_user_model
from django.utils import timezone

from apps.carts.models import Cart, CartItem
from apps.orders.models import Order, OrderStatus
from apps.promotions.models import DiscountType, Promotion

User = get_user_model()

FICTION = uuid.UUID("11111111-1111-1111-1111-111111111111")
SCIENCE = uuid.UUID("22222222-2222-2222-2222-222222222222")
HISTORY = uuid.UUID("33333333-3333-3333-3333-333333333333")


class FixedClock:
    """Clock that returns a settable instant."""

    def __init__(self, moment: datetime | None = None) -> None:
        self.moment = moment or timezone.now()

    def now(self) -> datetime:
        return self.moment

    def advance(self, **kwargs: Any) -> None:
        self.moment += timedelta(**kwargs)


class StubOrderHistory:
    """Order history probe answering from a set of user ids."""

    def __init__(self, users_with_orders: set[int] | None = None) -> None:
        self.users_with_orders = set(users_with_orders or ())

    def has_completed_order(self, user_id: int) -> bool:
        return user_id in self.users_with_orders


def create_user(username: str = "reader", **extra: Any) -> Any:
    extra.setdefault("email", f"{username}@example.com")
    return User.objects.create_user(username=username, password="testpass123", **extra)


def create_promotion(**overrides: Any) -> Promotion:
    now = timezone.now()
    values: dict[str, Any] = {
        "code": "SAVE20",
        "name": "Save 20%",
        "discount_type": DiscountType.PERCENTAGE,
        "discount_value": Decimal("20"),
        "min_order_amount": Decimal("0"),
        "max_uses_per_user": 1,
        "starts_at": now - timedelta(days=1),
        "expires_at": now + timedelta(days=30),
    }
    values.update(overrides)
    return Promotion.objects.create(**values)


def set_current_uses(promotion: Promotion, current_uses: int) -> Promotion:
    """Force the usage counter (test setup only; the application never writes it)."""
    Promotion.objects.filter(pk=promotion.pk).update(current_uses=current_uses)
    promotion.refresh_from_db()
    return promotion


def create_cart(user: Any = None, lines: list[tuple[Any, ...]] | None = None) -> Cart:
    """
    Build a cart from ``(unit_price, quantity[, category_id])`` tuples.
    """
    cart = Cart.objects.create(user=user)
    for unit_price, quantity, *rest in lines or ():
        CartItem.objects.create(
            cart=cart,
            book_id=uuid.uuid4(),
            category_id=rest[0] if rest else None,
            unit_price=Decimal(str(unit_price)),
            quantity=quantity,
        )
    return cart


def create_order(user: Any, status: str = OrderStatus.PENDING, subtotal: Decimal = Decimal("100000")) -> Order:
    return Order.objects.create(user=user, status=status, subtotal=subtotal)
