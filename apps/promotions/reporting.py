"""
Listing and reporting over promotions and their usage.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime

from apps.common.types import Err, Ok, Result

from .errors import PromotionError
from .interfaces import Clock
from .models import Promotion
from .repository import (
    ADMIN_SORTS,
    ADMIN_STATUS_FILTERS,
    DEFAULT_ADMIN_SORT,
    AdminListFilter,
    AdminPromotionRow,
    Page,
    PromotionRepository,
    UsageRecordView,
    UsageStats,
    clamp_page,
)


class PromotionReportingService:
    """Read-only views for the storefront and the admin back office."""

    def __init__(self, store: PromotionRepository, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    def list_active(
        self,
        category_id: uuid.UUID | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> Page[Promotion]:
        page, limit = clamp_page(page, limit)
        return self.store.list_active(self.clock.now(), category_id, page, limit)

    def list_admin(self, filters: AdminListFilter) -> Page[AdminPromotionRow]:
        page, limit = clamp_page(filters.page, filters.limit)
        filters = replace(
            filters,
            status=filters.status if filters.status in ADMIN_STATUS_FILTERS else "all",
            sort=filters.sort if filters.sort in ADMIN_SORTS else DEFAULT_ADMIN_SORT,
            page=page,
            limit=limit,
        )
        return self.store.list_admin(filters, self.clock.now())

    def usage_history(
        self,
        promotion_id: uuid.UUID,
        since: datetime | None = None,
        until: datetime | None = None,
        user_id: int | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> Result[Page[UsageRecordView], PromotionError]:
        if self.store.find_by_id(promotion_id) is None:
            return Err(PromotionError.not_found())
        page, limit = clamp_page(page, limit)
        return Ok(self.store.usage_history(promotion_id, since, until, user_id, page, limit))

    def usage_stats(
        self,
        promotion_id: uuid.UUID,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> Result[UsageStats, PromotionError]:
        if self.store.find_by_id(promotion_id) is None:
            return Err(PromotionError.not_found())
        return Ok(self.store.usage_stats(promotion_id, since, until))
