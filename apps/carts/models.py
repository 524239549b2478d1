"""
Cart models for the Bookstore Platform.

The cart owns its promotion association (promo_code, discount_amount,
promo_metadata). Only the promotion subsystem writes those columns, always
through CartPromotionRepository with the cart's version as the optimistic
lock.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import ClassVar

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils.translation import gettext_lazy as _


class Cart(models.Model):
    """Shopping cart for a signed-in user or an anonymous session."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="carts",
    )
    session_id = models.CharField(max_length=64, blank=True, default="")

    # Promotion association (exactly one code per cart)
    promo_code = models.CharField(max_length=50, null=True, blank=True)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0"))
    promo_metadata = models.JSONField(default=dict, blank=True)

    version = models.PositiveIntegerField(default=0)
    expires_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "carts"
        verbose_name = _("Cart")
        verbose_name_plural = _("Carts")
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.CheckConstraint(condition=Q(discount_amount__gte=0), name="carts_discount_non_negative"),
            models.CheckConstraint(
                condition=Q(promo_code__isnull=False) | Q(discount_amount=0),
                name="carts_discount_requires_code",
            ),
        )
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["promo_code"], name="idx_carts_promo_code", condition=Q(promo_code__isnull=False)),
        )

    def __str__(self) -> str:
        return f"Cart {self.id}"


class CartItem(models.Model):
    """A book line in a cart, priced at the time it was added."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    cart = models.ForeignKey(Cart, on_delete=models.CASCADE, related_name="items")
    book_id = models.UUIDField()
    category_id = models.UUIDField(null=True, blank=True)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField(default=1)
    added_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "cart_items"
        verbose_name = _("Cart item")
        verbose_name_plural = _("Cart items")
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.UniqueConstraint(fields=["cart", "book_id"], name="uniq_cart_items_book"),
            models.CheckConstraint(condition=Q(quantity__gte=1), name="cart_items_quantity_positive"),
        )

    def __str__(self) -> str:
        return f"{self.book_id} x{self.quantity}"

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity
