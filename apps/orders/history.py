"""
Order history queries used by other domains.
"""

from __future__ import annotations

from .models import COMPLETED_ORDER_STATUSES, Order


class OrderHistory:
    """Answers whether a user has already completed an order."""

    def has_completed_order(self, user_id: int) -> bool:
        return Order.objects.filter(user_id=user_id, status__in=COMPLETED_ORDER_STATUSES).exists()
