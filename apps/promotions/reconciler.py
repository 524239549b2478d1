"""
Cart reconciler: background sweep that removes promotions from carts once
they are no longer eligible.

Each pass fetches the least recently checked promoted carts, evaluates the
removal rules for each, and either clears the promotion together with an
audit row or stamps ``promo_metadata.last_checked_at``. Every cart write is
conditional on the cart version; a cart changed by its owner mid-pass is
skipped and picked up on a later pass.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from django.conf import settings
from django.db import DatabaseError, close_old_connections, connection, transaction

from apps.carts.repository import CartPromotionRepository
from apps.common.db import statement_deadline
from apps.orders.history import OrderHistory

from .interfaces import CartRepository, CartView, Clock, OrderHistoryProbe, SystemClock, format_checked_at
from .models import Promotion, RemovalReason
from .repository import PromotionRepository

logger = logging.getLogger(__name__)

OUTCOME_REMOVED = "removed"
OUTCOME_CHECKED = "checked"
OUTCOME_SKIPPED = "skipped"


def _setting(name: str, default: Any) -> Any:
    return getattr(settings, "PROMOTIONS", {}).get(name, default)


@dataclass
class ReconcileStats:
    """Counters for one reconciliation pass."""

    total_processed: int = 0
    removed: int = 0
    skipped: int = 0
    errors: int = 0
    duration: float = 0.0
    reasons: Counter[str] = field(default_factory=Counter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "removed": self.removed,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration": round(self.duration, 3),
            "reasons": dict(self.reasons),
        }


class CartReconciler:
    """Sweeps promoted carts and drops promotions that became ineligible."""

    def __init__(  # noqa: PLR0913
        self,
        store: PromotionRepository | None = None,
        carts: CartRepository | None = None,
        order_history: OrderHistoryProbe | None = None,
        clock: Clock | None = None,
        batch_size: int | None = None,
        interval: float | None = None,
        max_backoff: float | None = None,
        shard: tuple[int, int] | None = None,
    ) -> None:
        if shard is not None and not 0 <= shard[0] < shard[1]:
            raise ValueError(f"Invalid reconciler shard {shard}")
        self.store = store or PromotionRepository()
        self.carts = carts or CartPromotionRepository()
        self.order_history = order_history or OrderHistory()
        self.clock = clock or SystemClock()
        self.batch_size = batch_size or int(_setting("RECONCILER_BATCH_SIZE", 100))
        self.interval = float(interval if interval is not None else _setting("RECONCILER_INTERVAL_SECONDS", 5))
        self.max_backoff = float(max_backoff if max_backoff is not None else _setting("RECONCILER_MAX_BACKOFF_SECONDS", 60))
        self.recheck_seconds = int(_setting("RECONCILER_RECHECK_SECONDS", 0))
        self.statement_timeout = float(_setting("STATEMENT_TIMEOUT_SECONDS", 5))
        self.shard = shard

    # ---------------------------------------------------------------------------
    # Removal rules
    # ---------------------------------------------------------------------------

    def removal_reason(  # noqa: PLR0911
        self,
        cart: CartView,
        promotion: Promotion | None,
        now: datetime,
    ) -> RemovalReason | None:
        """First rule the cart's promotion now violates, or None while it is still eligible."""
        # A code that no longer resolves is treated like a deactivated promotion
        if promotion is None or not promotion.is_active:
            return RemovalReason.DEACTIVATED
        if promotion.has_expired(now):
            return RemovalReason.EXPIRED
        if promotion.is_exhausted:
            return RemovalReason.MAX_USES_REACHED
        if cart.user_id is not None and (
            self.store.count_user_usages(promotion.id, cart.user_id) >= promotion.max_uses_per_user
        ):
            return RemovalReason.USER_LIMIT_REACHED
        if cart.subtotal < promotion.min_order_amount:
            return RemovalReason.MIN_ORDER_NO_LONGER_MET
        if (
            promotion.first_order_only
            and cart.user_id is not None
            and self.order_history.has_completed_order(cart.user_id)
        ):
            return RemovalReason.FIRST_ORDER_RULE_VIOLATED
        if not promotion.applies_to_categories(cart.snapshot.category_ids):
            return RemovalReason.CATEGORY_NO_LONGER_APPLICABLE
        return None

    # ---------------------------------------------------------------------------
    # Single cart
    # ---------------------------------------------------------------------------

    @staticmethod
    def _removal_metadata(
        cart: CartView,
        promotion: Promotion | None,
        reason: RemovalReason,
        now: datetime,
    ) -> dict[str, Any]:
        return {
            **(cart.promo_metadata or {}),
            "removal_reason": reason.value,
            "removed_at": format_checked_at(now),
            "promo_code": cart.promo_code,
            "promotion_id": str(promotion.id) if promotion else None,
            "expires_at": promotion.expires_at.isoformat() if promotion else None,
            "is_active": promotion.is_active if promotion else None,
            "max_uses": promotion.max_uses if promotion else None,
            "current_uses": promotion.current_uses if promotion else None,
        }

    def reconcile_cart(self, cart: CartView, promotion: Promotion | None) -> tuple[str, RemovalReason | None]:
        """Check one cart; returns the outcome and, for removals, the reason."""
        now = self.clock.now()
        reason = self.removal_reason(cart, promotion, now)

        if reason is None:
            if self.carts.mark_checked(cart.cart_id, cart.version, cart.promo_code, now):
                return OUTCOME_CHECKED, None
            return OUTCOME_SKIPPED, None

        with transaction.atomic():
            cleared = self.carts.clear_promotion_fields(
                cart.cart_id,
                expected_version=cart.version,
                expected_code=cart.promo_code,
            )
            if not cleared:
                return OUTCOME_SKIPPED, reason
            self.store.record_removal(
                cart_id=cart.cart_id,
                user_id=cart.user_id,
                code=cart.promo_code,
                discount_at_removal=cart.discount_amount,
                reason=reason,
                metadata=self._removal_metadata(cart, promotion, reason, now),
            )

        logger.info(
            f"🧹 [Reconciler] Removed {cart.promo_code} from cart {cart.cart_id}: {reason.value}",
            extra={"cart_id": str(cart.cart_id), "promo_code": cart.promo_code, "reason": reason.value},
        )
        return OUTCOME_REMOVED, reason

    # ---------------------------------------------------------------------------
    # Passes
    # ---------------------------------------------------------------------------

    def run_once(self, stop_event: threading.Event | None = None) -> ReconcileStats:
        """Process one batch of promoted carts."""
        started = time.monotonic()
        stats = ReconcileStats()
        checked_before = self.clock.now() - timedelta(seconds=self.recheck_seconds)

        with statement_deadline(self.statement_timeout):
            batch = self.carts.promoted_carts_due(self.batch_size, checked_before, shard=self.shard)
            promotions = self.store.find_by_codes({cart.promo_code for cart in batch if cart.promo_code})

        for cart in batch:
            # Shutdown is honoured between carts, never inside one
            if stop_event is not None and stop_event.is_set():
                break
            stats.total_processed += 1
            try:
                with statement_deadline(self.statement_timeout):
                    outcome, reason = self.reconcile_cart(cart, promotions.get(cart.promo_code or ""))
            except DatabaseError:
                logger.exception(
                    f"🔥 [Reconciler] Failed to reconcile cart {cart.cart_id}",
                    extra={"cart_id": str(cart.cart_id)},
                )
                stats.errors += 1
                continue

            if outcome == OUTCOME_REMOVED and reason is not None:
                stats.removed += 1
                stats.reasons[reason.value] += 1
            elif outcome == OUTCOME_SKIPPED:
                stats.skipped += 1

        stats.duration = time.monotonic() - started
        if stats.total_processed:
            logger.info(
                f"✅ [Reconciler] Pass complete: {stats.total_processed} carts, "
                f"{stats.removed} removed, {stats.skipped} skipped, {stats.errors} errors",
                extra=stats.to_dict(),
            )
        return stats

    def run(self, stop_event: threading.Event) -> None:
        """Loop until ``stop_event`` is set, backing off while there is nothing to do."""
        delay = self.interval
        logger.info(f"🔄 [Reconciler] Starting (batch size {self.batch_size}, interval {self.interval}s)")
        while not stop_event.is_set():
            try:
                stats = self.run_once(stop_event)
            except DatabaseError:
                logger.exception("🔥 [Reconciler] Batch fetch failed")
                delay = min(max(delay, self.interval) * 2, self.max_backoff)
            else:
                if stats.total_processed == 0:
                    delay = min(max(delay, self.interval) * 2, self.max_backoff)
                else:
                    delay = self.interval
            finally:
                close_old_connections()
            stop_event.wait(delay)
        logger.info("🛑 [Reconciler] Stopped")


class ReconcilerWorker(threading.Thread):
    """Runs a CartReconciler loop on a dedicated thread."""

    def __init__(self, reconciler: CartReconciler, stop_event: threading.Event, name: str = "promo-reconciler") -> None:
        super().__init__(name=name, daemon=True)
        self.reconciler = reconciler
        self.stop_event = stop_event

    def run(self) -> None:
        try:
            self.reconciler.run(self.stop_event)
        finally:
            connection.close()
