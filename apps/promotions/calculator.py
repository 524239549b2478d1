"""
Discount calculator.

Pure functions: no database access, no clock. Amounts are Decimal end to end
and rounded exactly once, at the end, to the configured minor-unit quantum.
"""

from __future__ import annotations

import decimal
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from django.conf import settings

from .models import DiscountType

ZERO = Decimal("0")
HUNDRED = Decimal("100")

CAP_REASON_MAX_DISCOUNT = "max_discount_amount"
CAP_REASON_EXCEEDS_SUBTOTAL = "exceeds_subtotal"


class DiscountRule(Protocol):
    """The promotion fields the calculator reads."""

    discount_type: str
    discount_value: Decimal
    max_discount_amount: Decimal | None


@dataclass(frozen=True)
class DiscountBreakdown:
    subtotal: Decimal
    discount_type: str
    raw_discount: Decimal
    final_discount: Decimal
    capped: bool
    cap_reason: str | None = None


def _rounding_settings() -> tuple[Decimal, str]:
    config = getattr(settings, "PROMOTIONS", {})
    quantum = Decimal(str(config.get("DISCOUNT_QUANTUM", "1")))
    rounding = getattr(decimal, config.get("ROUNDING", "ROUND_HALF_UP"))
    return quantum, rounding


def round_amount(amount: Decimal) -> Decimal:
    """Round to the currency's minor-unit precision using the configured mode."""
    quantum, rounding = _rounding_settings()
    return amount.quantize(quantum, rounding=rounding)


def compute_with_breakdown(promotion: DiscountRule, subtotal: Decimal) -> DiscountBreakdown:
    """Compute the discount and report how it was capped."""
    subtotal = Decimal(subtotal)
    value = Decimal(promotion.discount_value)
    capped = False
    cap_reason = None

    if promotion.discount_type == DiscountType.PERCENTAGE:
        raw = subtotal * value / HUNDRED
        amount = raw
        cap = promotion.max_discount_amount
        if cap is not None and raw > cap:
            amount = Decimal(cap)
            capped = True
            cap_reason = CAP_REASON_MAX_DISCOUNT
    elif promotion.discount_type == DiscountType.FIXED:
        raw = value
        amount = raw
        if raw > subtotal:
            amount = subtotal
            capped = True
            cap_reason = CAP_REASON_EXCEEDS_SUBTOTAL
    else:
        # Unreachable for stored promotions (CHECK constraint on discount_type)
        raw = ZERO
        amount = ZERO

    final = round_amount(max(amount, ZERO))
    # Rounding up can lift the discount above a fractional subtotal
    if final > subtotal:
        quantum, _ = _rounding_settings()
        final = max(subtotal, ZERO).quantize(quantum, rounding=decimal.ROUND_FLOOR)

    return DiscountBreakdown(
        subtotal=subtotal,
        discount_type=promotion.discount_type,
        raw_discount=raw,
        final_discount=final,
        capped=capped,
        cap_reason=cap_reason,
    )


def compute(promotion: DiscountRule, subtotal: Decimal) -> Decimal:
    """Discount amount for ``subtotal`` under ``promotion``."""
    return compute_with_breakdown(promotion, subtotal).final_discount
