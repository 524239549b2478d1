"""
Promotion models for the Bookstore Platform.

- Promotion: a time-bounded discount rule identified by a customer-facing code
- PromotionUsage: one consumption of a promotion by one order (append-only)
- PromotionRemovalAudit: a promotion automatically removed from a cart

``Promotion.current_uses`` is maintained by a database trigger on
``promotion_usage`` inserts (see migration 0002) and is never written by
application code.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import F, Q
from django.db.models.functions import Lower
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

# ===============================================================================
# Constants
# ===============================================================================

PROMO_CODE_MAX_LENGTH = 50
MAX_PERCENTAGE = Decimal("100")
MONEY_DIGITS = 12
MONEY_PLACES = 2
# Columns only the usage trigger and versioned updates write
STORE_OWNED_FIELDS = frozenset({"current_uses", "version"})


class DiscountType(models.TextChoices):
    PERCENTAGE = "percentage", _("Percentage")
    FIXED = "fixed", _("Fixed amount")


class PromotionStatus(models.TextChoices):
    """Derived status shown in admin listings; never stored."""

    INACTIVE = "inactive", _("Inactive")
    UPCOMING = "upcoming", _("Upcoming")
    ACTIVE = "active", _("Active")
    EXPIRED = "expired", _("Expired")
    EXHAUSTED = "exhausted", _("Exhausted")


class RemovalReason(models.TextChoices):
    EXPIRED = "expired", _("Expired")
    DEACTIVATED = "deactivated", _("Deactivated")
    MAX_USES_REACHED = "max_uses_reached", _("Global usage limit reached")
    MIN_ORDER_NO_LONGER_MET = "min_order_no_longer_met", _("Minimum order no longer met")
    USER_LIMIT_REACHED = "user_limit_reached", _("Per-user limit reached")
    CATEGORY_NO_LONGER_APPLICABLE = "category_no_longer_applicable", _("No applicable category in cart")
    FIRST_ORDER_RULE_VIOLATED = "first_order_rule_violated", _("First-order rule violated")


def normalize_code(code: str) -> str:
    """Normalize a promotion code to its stored form (trimmed, uppercase)."""
    return code.strip().upper()


# ===============================================================================
# Promotion
# ===============================================================================


class Promotion(models.Model):
    """
    Promotion campaign definition.
    Codes are case-insensitive and stored uppercase.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Identification
    code = models.CharField(
        max_length=PROMO_CODE_MAX_LENGTH,
        unique=True,
        help_text=_("Customer-facing code (case-insensitive)"),
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")

    # Discount rule
    discount_type = models.CharField(max_length=20, choices=DiscountType.choices)
    discount_value = models.DecimalField(
        max_digits=MONEY_DIGITS,
        decimal_places=MONEY_PLACES,
        help_text=_("Percentage (0-100] or fixed amount in minor units"),
    )
    max_discount_amount = models.DecimalField(
        max_digits=MONEY_DIGITS,
        decimal_places=MONEY_PLACES,
        null=True,
        blank=True,
        help_text=_("Cap for percentage discounts"),
    )

    # Eligibility rule
    min_order_amount = models.DecimalField(
        max_digits=MONEY_DIGITS,
        decimal_places=MONEY_PLACES,
        default=Decimal("0"),
    )
    applicable_category_ids = models.JSONField(
        default=list,
        blank=True,
        help_text=_("Category UUIDs the promotion is restricted to; empty applies to all"),
    )
    first_order_only = models.BooleanField(default=False)

    # Usage policy
    max_uses = models.PositiveIntegerField(null=True, blank=True, help_text=_("Global limit; empty = unlimited"))
    max_uses_per_user = models.PositiveIntegerField(default=1)
    current_uses = models.PositiveIntegerField(default=0, editable=False)

    # Validity
    starts_at = models.DateTimeField()
    expires_at = models.DateTimeField()

    # Status
    is_active = models.BooleanField(default=True)
    version = models.PositiveIntegerField(default=0, editable=False)

    # Audit
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "promotions"
        verbose_name = _("Promotion")
        verbose_name_plural = _("Promotions")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.UniqueConstraint(Lower("code"), name="uniq_promotions_code_ci"),
            models.CheckConstraint(condition=Q(expires_at__gt=F("starts_at")), name="promotions_valid_window"),
            models.CheckConstraint(
                condition=(
                    Q(discount_type=DiscountType.PERCENTAGE, discount_value__gt=0, discount_value__lte=MAX_PERCENTAGE)
                    | Q(discount_type=DiscountType.FIXED, discount_value__gt=0)
                ),
                name="promotions_discount_value_range",
            ),
            models.CheckConstraint(
                condition=Q(max_discount_amount__isnull=True) | Q(max_discount_amount__gt=0),
                name="promotions_max_discount_positive",
            ),
            models.CheckConstraint(condition=Q(min_order_amount__gte=0), name="promotions_min_order_non_negative"),
            models.CheckConstraint(condition=Q(max_uses_per_user__gte=1), name="promotions_per_user_at_least_one"),
            models.CheckConstraint(
                condition=Q(max_uses__isnull=True) | Q(max_uses__gte=F("current_uses")),
                name="promotions_uses_within_limit",
            ),
        )
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["is_active", "starts_at", "expires_at"], name="idx_promotions_active"),
            models.Index(fields=["expires_at"], name="idx_promotions_expires"),
        )

    def __str__(self) -> str:
        return f"{self.code} - {self.name}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        """
        Normalize code to uppercase before saving.

        Saving an existing row never writes ``current_uses`` (owned by the
        usage trigger) or ``version`` (bumped only by versioned updates), so a
        stale instance cannot move the counter backwards.
        """
        if self.code:
            self.code = normalize_code(self.code)
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None:
                update_fields = [field.name for field in self._meta.concrete_fields if not field.primary_key]
            kwargs["update_fields"] = [name for name in update_fields if name not in STORE_OWNED_FIELDS]
        super().save(*args, **kwargs)

    def clean(self) -> None:
        """Validate promotion configuration (used by admin forms)."""
        super().clean()
        if self.discount_value is not None:
            if self.discount_value <= 0:
                raise ValidationError({"discount_value": _("Discount value must be positive")})
            if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > MAX_PERCENTAGE:
                raise ValidationError({"discount_value": _("Percentage cannot exceed 100")})
        if self.max_discount_amount is not None and self.max_discount_amount <= 0:
            raise ValidationError({"max_discount_amount": _("Maximum discount must be positive")})
        if self.starts_at and self.expires_at and self.expires_at <= self.starts_at:
            raise ValidationError({"expires_at": _("Expiry must be after the start time")})
        if self.max_uses is not None and self.max_uses < self.current_uses:
            raise ValidationError({"max_uses": _("Cannot be lower than the current usage count")})

    # ---------------------------------------------------------------------------
    # Derived state
    # ---------------------------------------------------------------------------

    @property
    def is_in_use(self) -> bool:
        return self.current_uses > 0

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.current_uses >= self.max_uses

    @property
    def remaining_uses(self) -> int | None:
        if self.max_uses is None:
            return None
        return max(self.max_uses - self.current_uses, 0)

    @property
    def usage_rate(self) -> float | None:
        """current_uses as a percentage of max_uses (None when unlimited)."""
        if not self.max_uses:
            return None
        return round(self.current_uses / self.max_uses * 100, 2)

    def has_started(self, now: datetime) -> bool:
        return now >= self.starts_at

    def has_expired(self, now: datetime) -> bool:
        # expires_at itself is still valid
        return now > self.expires_at

    def status_at(self, now: datetime) -> PromotionStatus:
        if not self.is_active:
            return PromotionStatus.INACTIVE
        if not self.has_started(now):
            return PromotionStatus.UPCOMING
        if self.has_expired(now):
            return PromotionStatus.EXPIRED
        if self.is_exhausted:
            return PromotionStatus.EXHAUSTED
        return PromotionStatus.ACTIVE

    @property
    def category_set(self) -> frozenset[str]:
        return frozenset(str(category_id) for category_id in self.applicable_category_ids or ())

    def applies_to_categories(self, category_ids: Iterable[Any]) -> bool:
        """True when the promotion is universal or any category is in its applicability set."""
        allowed = self.category_set
        if not allowed:
            return True
        return any(str(category_id) in allowed for category_id in category_ids if category_id is not None)


# ===============================================================================
# Promotion usage
# ===============================================================================


class PromotionUsage(models.Model):
    """
    One consumption of a promotion, written inside the order transaction.
    Rows are never updated or deleted; a cancelled order keeps its usage.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    promotion = models.ForeignKey(Promotion, on_delete=models.PROTECT, related_name="usages")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="promotion_usages")
    order = models.ForeignKey("orders.Order", on_delete=models.PROTECT, related_name="promotion_usages")
    discount_amount = models.DecimalField(max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)
    used_at = models.DateTimeField(default=timezone.now)
    version = models.PositiveIntegerField(default=0, editable=False)

    class Meta:
        db_table = "promotion_usage"
        verbose_name = _("Promotion usage")
        verbose_name_plural = _("Promotion usages")
        ordering: ClassVar[tuple[str, ...]] = ("-used_at",)
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.UniqueConstraint(fields=["promotion", "order"], name="uniq_promotion_usage_per_order"),
            models.CheckConstraint(condition=Q(discount_amount__gte=0), name="promotion_usage_discount_non_negative"),
        )
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["promotion", "user"], name="idx_promotion_usage_user"),
            models.Index(fields=["promotion", "-used_at"], name="idx_promotion_usage_time"),
        )

    def __str__(self) -> str:
        return f"{self.promotion_id} / order {self.order_id}: {self.discount_amount}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValidationError(_("Promotion usage records are append-only"))
        super().save(*args, **kwargs)


# ===============================================================================
# Automatic removal audit
# ===============================================================================


class PromotionRemovalAudit(models.Model):
    """Append-only record of a promotion removed from a cart by the reconciler."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    cart_id = models.UUIDField(db_index=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="promotion_removals",
    )
    code = models.CharField(max_length=PROMO_CODE_MAX_LENGTH)
    discount_at_removal = models.DecimalField(max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)
    reason = models.CharField(max_length=40, choices=RemovalReason.choices)
    metadata = models.JSONField(default=dict, blank=True)
    occurred_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "promotion_removal_audit"
        verbose_name = _("Promotion removal")
        verbose_name_plural = _("Promotion removals")
        ordering: ClassVar[tuple[str, ...]] = ("-occurred_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["code", "-occurred_at"], name="idx_promo_removal_code"),
        )

    def __str__(self) -> str:
        return f"{self.code} removed from cart {self.cart_id} ({self.reason})"
