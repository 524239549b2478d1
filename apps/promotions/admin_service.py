"""
Admin writer for promotions.

Creates and edits promotions on behalf of staff. Once a promotion has been
used, the fields that determine how an issued discount was computed are
frozen and the usage limits may only grow.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from apps.common.types import Err, Ok, Result

from .errors import PromotionError, PromotionErrorKind
from .models import MAX_PERCENTAGE, DiscountType, Promotion, normalize_code
from .repository import PromotionRepository

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {
        "code",
        "name",
        "description",
        "discount_type",
        "discount_value",
        "max_discount_amount",
        "min_order_amount",
        "applicable_category_ids",
        "first_order_only",
        "max_uses",
        "max_uses_per_user",
        "starts_at",
        "expires_at",
        "is_active",
    }
)
REQUIRED_ON_CREATE = ("code", "name", "discount_type", "discount_value", "starts_at", "expires_at")

# Fields that define an already issued discount
IMMUTABLE_WHEN_IN_USE = ("code", "discount_type", "discount_value", "applicable_category_ids", "first_order_only")
# Fields that may only grow once the promotion is in use
MONOTONIC_WHEN_IN_USE = ("max_uses", "max_uses_per_user", "expires_at")


class _BoundViolation(Exception):
    def __init__(self, field_name: str, reason: str, message: str) -> None:
        super().__init__(message)
        self.error = PromotionError.invalid_bound(field_name, reason, message)


def _as_decimal(field_name: str, value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise _BoundViolation(field_name, "not_a_number", f"{field_name} must be a decimal number") from exc


def _category_key(value: Any) -> list[str]:
    return sorted(str(category_id) for category_id in value or ())


class PromotionAdminService:
    """Staff-facing create/update/status/delete operations."""

    def __init__(self, store: PromotionRepository) -> None:
        self.store = store

    # ---------------------------------------------------------------------------
    # Field validation
    # ---------------------------------------------------------------------------

    @staticmethod
    def _clean(values: dict[str, Any]) -> dict[str, Any]:
        """Coerce and bound-check the fields present in ``values``."""
        unknown = sorted(set(values) - EDITABLE_FIELDS)
        if unknown:
            raise _BoundViolation(unknown[0], "not_editable", f"Field '{unknown[0]}' cannot be set")

        cleaned = dict(values)
        if "code" in cleaned:
            cleaned["code"] = normalize_code(cleaned["code"] or "")
            if not cleaned["code"]:
                raise _BoundViolation("code", "required", "Promotion code is required")
        if "discount_type" in cleaned and cleaned["discount_type"] not in DiscountType.values:
            raise _BoundViolation("discount_type", "unknown_type", "Discount type must be percentage or fixed")
        for field_name in ("discount_value", "min_order_amount"):
            if field_name in cleaned:
                cleaned[field_name] = _as_decimal(field_name, cleaned[field_name])
        if cleaned.get("max_discount_amount") is not None:
            cleaned["max_discount_amount"] = _as_decimal("max_discount_amount", cleaned["max_discount_amount"])
            if cleaned["max_discount_amount"] <= 0:
                raise _BoundViolation("max_discount_amount", "must_be_positive", "Maximum discount must be positive")
        if cleaned.get("min_order_amount") is not None and cleaned["min_order_amount"] < 0:
            raise _BoundViolation("min_order_amount", "must_be_non_negative", "Minimum order cannot be negative")
        if cleaned.get("max_uses") is not None and int(cleaned["max_uses"]) < 1:
            raise _BoundViolation("max_uses", "must_be_positive", "Usage limit must be at least 1")
        if "max_uses_per_user" in cleaned and (cleaned["max_uses_per_user"] is None or int(cleaned["max_uses_per_user"]) < 1):
            raise _BoundViolation("max_uses_per_user", "must_be_positive", "Per-user limit must be at least 1")
        if "applicable_category_ids" in cleaned:
            try:
                cleaned["applicable_category_ids"] = [
                    str(uuid.UUID(str(category_id))) for category_id in cleaned["applicable_category_ids"] or ()
                ]
            except ValueError as exc:
                raise _BoundViolation(
                    "applicable_category_ids", "not_a_uuid", "Category identifiers must be UUIDs"
                ) from exc
        return cleaned

    @staticmethod
    def _check_discount_value(discount_type: str, discount_value: Decimal) -> None:
        if discount_value <= 0:
            raise _BoundViolation("discount_value", "must_be_positive", "Discount value must be positive")
        if discount_type == DiscountType.PERCENTAGE and discount_value > MAX_PERCENTAGE:
            raise _BoundViolation("discount_value", "percentage_above_100", "Percentage cannot exceed 100")

    @staticmethod
    def _window_error(starts_at: datetime, expires_at: datetime) -> PromotionError | None:
        if expires_at <= starts_at:
            return PromotionError(
                PromotionErrorKind.INVALID_TIME_WINDOW,
                "Expiry must be after the start time",
                {"starts_at": starts_at, "expires_at": expires_at},
            )
        return None

    @staticmethod
    def _check_in_use_changes(promotion: Promotion, cleaned: dict[str, Any]) -> None:
        for field_name in IMMUTABLE_WHEN_IN_USE:
            if field_name not in cleaned:
                continue
            current, proposed = getattr(promotion, field_name), cleaned[field_name]
            if field_name == "applicable_category_ids":
                current, proposed = _category_key(current), _category_key(proposed)
            elif field_name == "discount_value":
                current, proposed = Decimal(current), Decimal(proposed)
            if current != proposed:
                raise _BoundViolation(
                    field_name,
                    "immutable_in_use",
                    f"{field_name} cannot be changed after the promotion has been used",
                )

        if "max_uses" in cleaned and cleaned["max_uses"] is not None:
            proposed = int(cleaned["max_uses"])
            if proposed < promotion.current_uses:
                raise _BoundViolation(
                    "max_uses",
                    "below_current_uses",
                    f"Usage limit cannot be lower than the {promotion.current_uses} uses already recorded",
                )
            if promotion.max_uses is None or proposed < promotion.max_uses:
                raise _BoundViolation("max_uses", "may_only_increase", "Usage limit can only be increased")

        if "max_uses_per_user" in cleaned and int(cleaned["max_uses_per_user"]) < promotion.max_uses_per_user:
            raise _BoundViolation("max_uses_per_user", "may_only_increase", "Per-user limit can only be increased")

        if "expires_at" in cleaned and cleaned["expires_at"] < promotion.expires_at:
            raise _BoundViolation("expires_at", "may_only_extend", "Expiry can only be extended")

    # ---------------------------------------------------------------------------
    # Operations
    # ---------------------------------------------------------------------------

    def create(self, data: dict[str, Any]) -> Result[Promotion, PromotionError]:
        missing = [field_name for field_name in REQUIRED_ON_CREATE if data.get(field_name) in (None, "")]
        if missing:
            return Err(PromotionError.invalid_bound(missing[0], "required", f"{missing[0]} is required"))
        try:
            cleaned = self._clean(data)
            self._check_discount_value(cleaned["discount_type"], cleaned["discount_value"])
        except _BoundViolation as violation:
            return Err(violation.error)

        window_error = self._window_error(cleaned["starts_at"], cleaned["expires_at"])
        if window_error is not None:
            return Err(window_error)

        if self.store.check_code_exists(cleaned["code"]):
            return Err(
                PromotionError(
                    PromotionErrorKind.DUPLICATE_CODE,
                    f"Promotion code '{cleaned['code']}' already exists",
                    {"code": cleaned["code"]},
                )
            )

        result = self.store.create(cleaned)
        if result.is_ok():
            promotion = result.unwrap()
            logger.info(
                f"🏷️ [Promotions] Created promotion {promotion.code} ({promotion.id})",
                extra={"promotion_id": str(promotion.id), "promo_code": promotion.code},
            )
        return result

    def prepare_update(self, promotion: Promotion, changes: dict[str, Any]) -> Result[dict[str, Any], PromotionError]:
        """Clean ``changes`` and run every update rule without writing."""
        try:
            cleaned = self._clean(changes)
            self._check_discount_value(
                cleaned.get("discount_type", promotion.discount_type),
                Decimal(cleaned.get("discount_value", promotion.discount_value)),
            )
            if promotion.is_in_use:
                self._check_in_use_changes(promotion, cleaned)
        except _BoundViolation as violation:
            return Err(violation.error)

        window_error = self._window_error(
            cleaned.get("starts_at", promotion.starts_at),
            cleaned.get("expires_at", promotion.expires_at),
        )
        if window_error is not None:
            return Err(window_error)

        if "code" in cleaned and self.store.check_code_exists(cleaned["code"], exclude_id=promotion.id):
            return Err(
                PromotionError(
                    PromotionErrorKind.DUPLICATE_CODE,
                    f"Promotion code '{cleaned['code']}' already exists",
                    {"code": cleaned["code"]},
                )
            )
        return Ok(cleaned)

    def update(
        self,
        promotion_id: uuid.UUID,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> Result[Promotion, PromotionError]:
        """
        Apply a partial update under optimistic locking.

        ``expected_version`` defaults to the version read here; callers that
        showed the promotion to a user should pass the version they displayed.
        """
        promotion = self.store.find_by_id(promotion_id)
        if promotion is None:
            return Err(PromotionError.not_found())
        if not changes:
            return Ok(promotion)

        prepared = self.prepare_update(promotion, changes)
        if prepared.is_err():
            return Err(prepared.unwrap_err())
        cleaned = prepared.unwrap()

        # A usage landing after our read would invalidate the checks above
        restricted = set(cleaned) & {*IMMUTABLE_WHEN_IN_USE, *MONOTONIC_WHEN_IN_USE}
        expected_current_uses = promotion.current_uses if restricted else None

        result = self.store.update(
            promotion.id,
            promotion.version if expected_version is None else expected_version,
            cleaned,
            expected_current_uses=expected_current_uses,
        )
        if result.is_ok():
            logger.info(
                f"✏️ [Promotions] Updated promotion {promotion.code}: {', '.join(sorted(cleaned))}",
                extra={"promotion_id": str(promotion.id), "fields": sorted(cleaned)},
            )
        elif result.unwrap_err().kind == PromotionErrorKind.UPDATE_CONFLICT:
            logger.info(f"🔁 [Promotions] Update conflict on promotion {promotion.id}")
        return result

    def get(self, promotion_id: uuid.UUID) -> Result[Promotion, PromotionError]:
        promotion = self.store.find_by_id(promotion_id)
        if promotion is None:
            return Err(PromotionError.not_found())
        return Ok(promotion)

    def set_status(self, promotion_id: uuid.UUID, is_active: bool) -> Result[Promotion, PromotionError]:
        result = self.store.update_status(promotion_id, is_active)
        if result.is_ok():
            logger.info(
                f"🔀 [Promotions] Promotion {result.unwrap().code} {'activated' if is_active else 'deactivated'}",
                extra={"promotion_id": str(promotion_id), "is_active": is_active},
            )
        return result

    def soft_delete(self, promotion_id: uuid.UUID) -> Result[Promotion, PromotionError]:
        result = self.store.soft_delete(promotion_id)
        if result.is_ok():
            logger.info(f"🗑️ [Promotions] Soft-deleted promotion {result.unwrap().code}")
        return result

    def check_code_exists(self, code: str, exclude_id: uuid.UUID | None = None) -> bool:
        normalized = normalize_code(code or "")
        if not normalized:
            return False
        return self.store.check_code_exists(normalized, exclude_id=exclude_id)
