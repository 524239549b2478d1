"""
Capabilities the promotion subsystem consumes from its collaborators, and the
cart value objects exchanged with them.

The cart and order domains implement these (apps.carts.repository,
apps.orders.history); tests substitute their own.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

from django.utils import timezone

# ===============================================================================
# Cart value objects
# ===============================================================================


@dataclass(frozen=True)
class CartLine:
    book_id: uuid.UUID
    category_id: uuid.UUID | None
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class CartSnapshot:
    """What the validator needs to know about a cart."""

    subtotal: Decimal
    lines: tuple[CartLine, ...] = ()

    @classmethod
    def from_lines(cls, lines: Sequence[CartLine]) -> CartSnapshot:
        lines = tuple(lines)
        return cls(subtotal=sum((line.line_total for line in lines), Decimal("0")), lines=lines)

    @property
    def category_ids(self) -> set[uuid.UUID]:
        return {line.category_id for line in self.lines if line.category_id is not None}

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass(frozen=True)
class CartView:
    """A cart with its items, version and promotion association."""

    cart_id: uuid.UUID
    user_id: int | None
    version: int
    lines: tuple[CartLine, ...]
    promo_code: str | None = None
    discount_amount: Decimal = Decimal("0")
    promo_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def snapshot(self) -> CartSnapshot:
        return CartSnapshot.from_lines(self.lines)

    @property
    def subtotal(self) -> Decimal:
        return self.snapshot.subtotal

    @property
    def total(self) -> Decimal:
        return max(self.subtotal - self.discount_amount, Decimal("0"))

    @property
    def last_checked_at(self) -> str | None:
        return (self.promo_metadata or {}).get("last_checked_at")


# ===============================================================================
# Capabilities
# ===============================================================================


class OrderHistoryProbe(Protocol):
    def has_completed_order(self, user_id: int) -> bool: ...


class CartRepository(Protocol):
    def load_with_items(self, cart_id: uuid.UUID) -> CartView | None: ...

    def write_promotion_fields(
        self,
        cart_id: uuid.UUID,
        expected_version: int,
        code: str,
        discount: Decimal,
        metadata: dict[str, Any],
    ) -> bool:
        """Store the association if the cart is still at ``expected_version``; bumps the version."""
        ...

    def clear_promotion_fields(
        self,
        cart_id: uuid.UUID,
        expected_version: int | None = None,
        expected_code: str | None = None,
    ) -> bool:
        """Drop the association; unpinned when ``expected_version`` is None."""
        ...

    def mark_checked(self, cart_id: uuid.UUID, expected_version: int, code: str, checked_at: datetime) -> bool:
        """Refresh ``promo_metadata.last_checked_at`` without bumping the cart version."""
        ...

    def promoted_carts_due(
        self,
        limit: int,
        checked_before: datetime | None = None,
        shard: tuple[int, int] | None = None,
    ) -> list[CartView]:
        """
        Carts holding a code, least recently checked first.

        With ``shard=(index, count)`` only carts whose id falls in that share
        are returned, so concurrent reconcilers work on disjoint carts.
        """
        ...


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return timezone.now()


def format_checked_at(moment: datetime) -> str:
    """Fixed-width UTC timestamp: text order equals time order."""
    return moment.astimezone(UTC).isoformat(timespec="microseconds")
