"""
Promotion services for the Bookstore Platform.
Validation, cart application and usage recording for promotion codes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from apps.carts.repository import CartPromotionRepository
from apps.common.types import Err, Ok, Result
from apps.orders.history import OrderHistory

from . import calculator
from .admin_service import PromotionAdminService
from .errors import PromotionError, PromotionErrorKind, translate_database_errors
from .interfaces import (
    CartRepository,
    CartSnapshot,
    CartView,
    Clock,
    OrderHistoryProbe,
    SystemClock,
    format_checked_at,
)
from .models import Promotion, PromotionUsage, normalize_code
from .repository import PromotionRepository
from .reporting import PromotionReportingService

logger = logging.getLogger(__name__)


# ===============================================================================
# Data Classes for Results
# ===============================================================================


@dataclass(frozen=True)
class PromotionSummary:
    """Customer-facing view of a promotion."""

    id: uuid.UUID
    code: str
    name: str
    description: str
    discount_type: str
    discount_value: Decimal
    max_discount_amount: Decimal | None
    min_order_amount: Decimal
    expires_at: datetime

    @classmethod
    def from_model(cls, promotion: Promotion) -> PromotionSummary:
        return cls(
            id=promotion.id,
            code=promotion.code,
            name=promotion.name,
            description=promotion.description,
            discount_type=promotion.discount_type,
            discount_value=promotion.discount_value,
            max_discount_amount=promotion.max_discount_amount,
            min_order_amount=promotion.min_order_amount,
            expires_at=promotion.expires_at,
        )


@dataclass(frozen=True)
class ValidationResult:
    """
    Successful validation of a code against a cart.

    Attributes:
        promotion: The promotion that matched.
        subtotal: Cart subtotal the discount was computed from.
        discount_amount: Rounded discount; ``final_amount + discount_amount == subtotal``.
        remaining_global_uses: Uses left before ``max_uses`` (None when unlimited).
        remaining_user_uses: Uses left for this user (``max_uses_per_user`` for anonymous carts).
    """

    promotion: PromotionSummary
    subtotal: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    remaining_global_uses: int | None
    remaining_user_uses: int
    message: str
    breakdown: calculator.DiscountBreakdown


@dataclass(frozen=True)
class RevalidationOutcome:
    """Cart state after re-checking its stored code; ``dropped`` is set when the code was removed."""

    cart: CartView
    dropped: PromotionError | None = None


@dataclass(frozen=True)
class AvailablePromotion:
    promotion: PromotionSummary
    discount_amount: Decimal
    final_amount: Decimal


# ===============================================================================
# Validator
# ===============================================================================


class PromotionValidator:
    """
    Evaluates the eligibility chain for a code against a cart snapshot.
    Checks short-circuit in a fixed order; the first failing rule is reported.
    """

    def __init__(
        self,
        store: PromotionRepository,
        order_history: OrderHistoryProbe,
        clock: Clock,
    ) -> None:
        self.store = store
        self.order_history = order_history
        self.clock = clock

    def validate(
        self,
        code: str,
        snapshot: CartSnapshot,
        user_id: int | None = None,
        now: datetime | None = None,
    ) -> Result[ValidationResult, PromotionError]:
        now = now or self.clock.now()
        normalized = normalize_code(code or "")
        if not normalized:
            return Err(PromotionError.not_found())

        promotion = self.store.find_by_code_active(normalized, now)
        if promotion is None:
            return Err(self._classify_miss(normalized, now))

        return self.evaluate(promotion, snapshot, user_id, now)

    def _classify_miss(self, code: str, now: datetime) -> PromotionError:
        """Explain why the active lookup found nothing, without revealing inactive codes."""
        promotion = self.store.find_by_code(code)
        if promotion is None or not promotion.is_active:
            return PromotionError.not_found(code)
        window_error = self._check_window(promotion, now)
        if window_error is not None:
            return window_error
        usage_error = self._check_global_usage(promotion)
        if usage_error is not None:
            return usage_error
        return PromotionError.not_found(code)

    @staticmethod
    def _check_window(promotion: Promotion, now: datetime) -> PromotionError | None:
        if not promotion.has_started(now):
            return PromotionError(
                PromotionErrorKind.NOT_STARTED,
                "This promotion has not started yet",
                {"starts_at": promotion.starts_at},
            )
        if promotion.has_expired(now):
            return PromotionError(
                PromotionErrorKind.EXPIRED,
                "This promotion has expired",
                {"expired_at": promotion.expires_at},
            )
        return None

    @staticmethod
    def _check_global_usage(promotion: Promotion) -> PromotionError | None:
        if promotion.is_exhausted:
            return PromotionError(
                PromotionErrorKind.USAGE_LIMIT_EXCEEDED,
                "This promotion has reached its usage limit",
                {"max_uses": promotion.max_uses, "current_uses": promotion.current_uses},
            )
        return None

    def evaluate(  # noqa: PLR0911
        self,
        promotion: Promotion,
        snapshot: CartSnapshot,
        user_id: int | None,
        now: datetime,
    ) -> Result[ValidationResult, PromotionError]:
        """Run the rule chain against an already loaded promotion."""
        window_error = self._check_window(promotion, now)
        if window_error is not None:
            return Err(window_error)

        usage_error = self._check_global_usage(promotion)
        if usage_error is not None:
            return Err(usage_error)

        # Per-user quota
        remaining_user_uses = promotion.max_uses_per_user
        if user_id is not None:
            user_usage_count = self.store.count_user_usages(promotion.id, user_id)
            if user_usage_count >= promotion.max_uses_per_user:
                return Err(
                    PromotionError(
                        PromotionErrorKind.USER_LIMIT_EXCEEDED,
                        "You have already used this promotion the maximum number of times",
                        {"max_uses_per_user": promotion.max_uses_per_user, "user_usage_count": user_usage_count},
                    )
                )
            remaining_user_uses = promotion.max_uses_per_user - user_usage_count

        # Minimum spend
        subtotal = snapshot.subtotal
        if subtotal < promotion.min_order_amount:
            return Err(
                PromotionError(
                    PromotionErrorKind.MIN_ORDER_NOT_MET,
                    f"Add {promotion.min_order_amount - subtotal} more to use this promotion",
                    {
                        "min_order_amount": promotion.min_order_amount,
                        "current_subtotal": subtotal,
                        "needed_amount": promotion.min_order_amount - subtotal,
                    },
                )
            )

        # First-order rule
        if promotion.first_order_only and user_id is not None and self.order_history.has_completed_order(user_id):
            return Err(
                PromotionError(
                    PromotionErrorKind.FIRST_ORDER_ONLY,
                    "This promotion is only valid on your first order",
                    {"completed_orders": True},
                )
            )

        # Category applicability
        if not promotion.applies_to_categories(snapshot.category_ids):
            return Err(
                PromotionError(
                    PromotionErrorKind.CATEGORY_NOT_APPLICABLE,
                    "None of the items in your cart qualify for this promotion",
                    {"applicable_categories": sorted(promotion.category_set)},
                )
            )

        breakdown = calculator.compute_with_breakdown(promotion, subtotal)
        discount = breakdown.final_discount
        return Ok(
            ValidationResult(
                promotion=PromotionSummary.from_model(promotion),
                subtotal=subtotal,
                discount_amount=discount,
                final_amount=subtotal - discount,
                remaining_global_uses=promotion.remaining_uses,
                remaining_user_uses=remaining_user_uses,
                message=f"Promotion {promotion.code} applied: you save {discount}",
                breakdown=breakdown,
            )
        )


# ===============================================================================
# Cart binding
# ===============================================================================


def build_promo_metadata(promotion: PromotionSummary, now: datetime) -> dict[str, Any]:
    """Snapshot stored on the cart: enough to audit an automatic removal later."""
    stamp = format_checked_at(now)
    return {
        "code": promotion.code,
        "promotion_id": str(promotion.id),
        "discount_type": promotion.discount_type,
        "discount_value": str(promotion.discount_value),
        "max_discount_amount": str(promotion.max_discount_amount) if promotion.max_discount_amount is not None else None,
        "min_order_amount": str(promotion.min_order_amount),
        "expires_at": promotion.expires_at.isoformat(),
        "applied_at": stamp,
        "last_checked_at": stamp,
    }


class CartPromotionService:
    """Applies and removes the single promotion a cart may hold."""

    def __init__(self, validator: PromotionValidator, carts: CartRepository, clock: Clock) -> None:
        self.validator = validator
        self.carts = carts
        self.clock = clock

    def _load(self, cart_id: uuid.UUID, user_id: int | None = None) -> Result[CartView, PromotionError]:
        cart = self.carts.load_with_items(cart_id)
        # Someone else's cart looks exactly like a missing one
        if cart is None or (cart.user_id is not None and user_id is not None and cart.user_id != user_id):
            return Err(PromotionError(PromotionErrorKind.CART_NOT_FOUND, "Cart not found", {"cart_id": str(cart_id)}))
        return Ok(cart)

    def _store(self, cart: CartView, result: ValidationResult, now: datetime) -> Result[CartView, PromotionError]:
        written = self.carts.write_promotion_fields(
            cart.cart_id,
            cart.version,
            result.promotion.code,
            result.discount_amount,
            build_promo_metadata(result.promotion, now),
        )
        if not written:
            return Err(
                PromotionError(
                    PromotionErrorKind.UPDATE_CONFLICT,
                    "The cart changed while applying the promotion. Please try again.",
                    {"cart_id": str(cart.cart_id)},
                )
            )
        return self._load(cart.cart_id)

    def apply(self, cart_id: uuid.UUID, user_id: int | None, code: str) -> Result[CartView, PromotionError]:
        loaded = self._load(cart_id, user_id)
        if loaded.is_err():
            return loaded
        cart = loaded.unwrap()
        if cart.snapshot.is_empty:
            return Err(PromotionError(PromotionErrorKind.CART_EMPTY, "Your cart is empty", {"cart_id": str(cart_id)}))

        now = self.clock.now()
        validation = self.validator.validate(code, cart.snapshot, user_id or cart.user_id, now)
        if validation.is_err():
            logger.info(
                f"🏷️ [Promotions] Code {normalize_code(code or '')} rejected for cart {cart_id}: "
                f"{validation.unwrap_err().kind.value}",
                extra={"cart_id": str(cart_id), "error_kind": validation.unwrap_err().kind.value},
            )
            return validation

        result = validation.unwrap()
        stored = self._store(cart, result, now)
        if stored.is_ok():
            logger.info(
                f"✅ [Promotions] Applied {result.promotion.code} to cart {cart_id} (discount {result.discount_amount})",
                extra={"cart_id": str(cart_id), "promo_code": result.promotion.code},
            )
        return stored

    def remove(self, cart_id: uuid.UUID, user_id: int | None = None) -> Result[CartView, PromotionError]:
        loaded = self._load(cart_id, user_id)
        if loaded.is_err():
            return loaded
        cart = loaded.unwrap()
        if cart.promo_code is None:
            return Ok(cart)
        self.carts.clear_promotion_fields(cart_id)
        logger.info(f"🗑️ [Promotions] Removed {cart.promo_code} from cart {cart_id}")
        return self._load(cart_id)

    def revalidate(self, cart_id: uuid.UUID) -> Result[RevalidationOutcome, PromotionError]:
        """Re-check the stored code after a cart change; refresh the discount or drop the code."""
        loaded = self._load(cart_id)
        if loaded.is_err():
            return loaded
        cart = loaded.unwrap()
        if cart.promo_code is None:
            return Ok(RevalidationOutcome(cart=cart))

        now = self.clock.now()
        validation = self.validator.validate(cart.promo_code, cart.snapshot, cart.user_id, now)
        if validation.is_ok():
            stored = self._store(cart, validation.unwrap(), now)
            return stored.map(lambda refreshed: RevalidationOutcome(cart=refreshed))

        error = validation.unwrap_err()
        if not self.carts.clear_promotion_fields(cart_id, expected_version=cart.version, expected_code=cart.promo_code):
            return Err(
                PromotionError(
                    PromotionErrorKind.UPDATE_CONFLICT,
                    "The cart changed while re-checking its promotion",
                    {"cart_id": str(cart_id)},
                )
            )
        logger.info(f"🏷️ [Promotions] Dropped {cart.promo_code} from cart {cart_id} after cart change: {error.kind.value}")
        refreshed = self._load(cart_id)
        return refreshed.map(lambda view: RevalidationOutcome(cart=view, dropped=error))

    def available_for_cart(self, cart_id: uuid.UUID, user_id: int | None) -> Result[list[AvailablePromotion], PromotionError]:
        """Active promotions the cart qualifies for right now, biggest discount first."""
        loaded = self._load(cart_id, user_id)
        if loaded.is_err():
            return loaded
        cart = loaded.unwrap()
        now = self.clock.now()
        available: list[AvailablePromotion] = []
        for promotion in self.validator.store.active_promotions(now):
            outcome = self.validator.evaluate(promotion, cart.snapshot, user_id or cart.user_id, now)
            if outcome.is_ok():
                result = outcome.unwrap()
                available.append(
                    AvailablePromotion(
                        promotion=result.promotion,
                        discount_amount=result.discount_amount,
                        final_amount=result.final_amount,
                    )
                )
        available.sort(key=lambda item: item.discount_amount, reverse=True)
        return Ok(available)


# ===============================================================================
# Usage recorder
# ===============================================================================


class UsageRecorder:
    """Records promotion consumption inside the order transaction."""

    def __init__(self, store: PromotionRepository) -> None:
        self.store = store

    def record(
        self,
        order_id: uuid.UUID,
        promotion_id: uuid.UUID,
        user_id: int,
        discount_amount: Decimal,
        using: str = "default",
    ) -> Result[PromotionUsage, PromotionError]:
        """
        Insert the usage row; the trigger bumps ``current_uses`` in the same statement.

        Must be called inside the order's ``transaction.atomic`` block. Commit of
        the order commits the usage; rollback leaves the counter untouched.
        """
        result = self.store.insert_usage(promotion_id, user_id, order_id, discount_amount, using=using)
        if result.is_err():
            error = result.unwrap_err()
            if error.kind == PromotionErrorKind.DUPLICATE_USAGE:
                logger.info(
                    f"🔁 [Promotions] Usage for order {order_id} already recorded",
                    extra={"order_id": str(order_id), "promotion_id": str(promotion_id)},
                )
            else:
                logger.warning(
                    f"⚠️ [Promotions] Usage for order {order_id} rejected: {error.kind.value}",
                    extra={"order_id": str(order_id), "promotion_id": str(promotion_id)},
                )
            return result

        logger.info(
            f"🎟️ [Promotions] Recorded usage of {promotion_id} for order {order_id} (discount {discount_amount})",
            extra={"order_id": str(order_id), "promotion_id": str(promotion_id), "user_id": user_id},
        )
        return result


# ===============================================================================
# Facade
# ===============================================================================


class Promotions:
    """
    Entry point of the promotion subsystem.

    Collaborators default to the Django implementations; tests inject their
    own order history, cart repository or clock.
    """

    def __init__(
        self,
        store: PromotionRepository | None = None,
        order_history: OrderHistoryProbe | None = None,
        carts: CartRepository | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store or PromotionRepository()
        self.order_history = order_history or OrderHistory()
        self.carts = carts or CartPromotionRepository()
        self.clock = clock or SystemClock()

        self.validator = PromotionValidator(self.store, self.order_history, self.clock)
        self.cart_binding = CartPromotionService(self.validator, self.carts, self.clock)
        self.usage_recorder = UsageRecorder(self.store)
        self.admin = PromotionAdminService(self.store)
        self.reporting = PromotionReportingService(self.store, self.clock)

    # Customer surface -------------------------------------------------------

    @translate_database_errors
    def validate(
        self,
        code: str,
        snapshot: CartSnapshot,
        user_id: int | None = None,
    ) -> Result[ValidationResult, PromotionError]:
        return self.validator.validate(code, snapshot, user_id)

    @translate_database_errors
    def validate_for_cart(
        self,
        code: str,
        cart_id: uuid.UUID,
        user_id: int | None = None,
    ) -> Result[ValidationResult, PromotionError]:
        cart = self.carts.load_with_items(cart_id)
        if cart is None or (cart.user_id is not None and cart.user_id != user_id):
            return Err(PromotionError(PromotionErrorKind.CART_NOT_FOUND, "Cart not found", {"cart_id": str(cart_id)}))
        return self.validator.validate(code, cart.snapshot, user_id or cart.user_id)

    @translate_database_errors
    def apply_to_cart(self, cart_id: uuid.UUID, user_id: int | None, code: str) -> Result[CartView, PromotionError]:
        return self.cart_binding.apply(cart_id, user_id, code)

    @translate_database_errors
    def remove_from_cart(self, cart_id: uuid.UUID, user_id: int | None = None) -> Result[CartView, PromotionError]:
        return self.cart_binding.remove(cart_id, user_id)

    @translate_database_errors
    def revalidate_cart(self, cart_id: uuid.UUID) -> Result[RevalidationOutcome, PromotionError]:
        return self.cart_binding.revalidate(cart_id)

    @translate_database_errors
    def available_for_cart(
        self, cart_id: uuid.UUID, user_id: int | None = None
    ) -> Result[list[AvailablePromotion], PromotionError]:
        return self.cart_binding.available_for_cart(cart_id, user_id)

    def record_usage(
        self,
        order_id: uuid.UUID,
        promotion_id: uuid.UUID,
        user_id: int,
        discount_amount: Decimal,
        using: str = "default",
    ) -> Result[PromotionUsage, PromotionError]:
        # Database failures propagate so they abort the order transaction
        return self.usage_recorder.record(order_id, promotion_id, user_id, discount_amount, using=using)

    @translate_database_errors
    def list_active(
        self, category_id: uuid.UUID | None = None, page: int | None = None, limit: int | None = None
    ) -> Result[Any, PromotionError]:
        return Ok(self.reporting.list_active(category_id, page, limit))

    # Admin surface ----------------------------------------------------------

    @translate_database_errors
    def create(self, data: dict[str, Any]) -> Result[Promotion, PromotionError]:
        return self.admin.create(data)

    @translate_database_errors
    def update(
        self,
        promotion_id: uuid.UUID,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> Result[Promotion, PromotionError]:
        return self.admin.update(promotion_id, changes, expected_version)

    @translate_database_errors
    def get(self, promotion_id: uuid.UUID) -> Result[Promotion, PromotionError]:
        return self.admin.get(promotion_id)

    @translate_database_errors
    def list_admin(self, filters: Any) -> Result[Any, PromotionError]:
        return Ok(self.reporting.list_admin(filters))

    @translate_database_errors
    def set_status(self, promotion_id: uuid.UUID, is_active: bool) -> Result[Promotion, PromotionError]:
        return self.admin.set_status(promotion_id, is_active)

    @translate_database_errors
    def soft_delete(self, promotion_id: uuid.UUID) -> Result[Promotion, PromotionError]:
        return self.admin.soft_delete(promotion_id)

    @translate_database_errors
    def usage_history(self, promotion_id: uuid.UUID, **filters: Any) -> Result[Any, PromotionError]:
        return self.reporting.usage_history(promotion_id, **filters)

    @translate_database_errors
    def usage_stats(self, promotion_id: uuid.UUID, **filters: Any) -> Result[Any, PromotionError]:
        return self.reporting.usage_stats(promotion_id, **filters)

    @translate_database_errors
    def check_code_exists(self, code: str, exclude_id: uuid.UUID | None = None) -> Result[bool, PromotionError]:
        return Ok(self.admin.check_code_exists(code, exclude_id))
