"""
Promotion store: persistence for promotions and their usage records.

Concurrency contract:
- promotion updates are conditional on ``version`` and bump it; a stale
  version updates nothing and surfaces as ``update_conflict``;
- ``current_uses`` is only ever changed by the usage-insert trigger;
- usage rows are unique per (promotion, order) and inserted inside the
  caller's transaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

from django.conf import settings
from django.db import IntegrityError, connections, transaction
from django.db.models import Avg, Count, F, Max, Min, Q, QuerySet, Sum
from django.db.models.functions import Lower
from django.utils import timezone

from apps.common.types import Err, Ok, Result

from .errors import PromotionError, PromotionErrorKind
from .models import (
    Promotion,
    PromotionRemovalAudit,
    PromotionStatus,
    PromotionUsage,
    RemovalReason,
    normalize_code,
)

T = TypeVar("T")

ZERO = Decimal("0")

# ===============================================================================
# Listing types
# ===============================================================================

ADMIN_SORTS: dict[str, tuple[str, ...]] = {
    "created_desc": ("-created_at", "id"),
    "expires_asc": ("expires_at", "id"),
    "usage_desc": ("-current_uses", "-created_at"),
    "name_asc": ("name", "id"),
}
DEFAULT_ADMIN_SORT = "created_desc"
ADMIN_STATUS_FILTERS = ("all", *PromotionStatus.values)


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages


@dataclass(frozen=True)
class AdminListFilter:
    status: str = "all"
    search: str = ""
    sort: str = DEFAULT_ADMIN_SORT
    page: int = 1
    limit: int = 20


@dataclass(frozen=True)
class AdminPromotionRow:
    promotion: Promotion
    status: PromotionStatus
    usage_rate: float | None


@dataclass(frozen=True)
class UsageRecordView:
    id: uuid.UUID
    user_id: int
    user_email: str
    user_full_name: str
    order_id: uuid.UUID
    order_number: str
    order_total: Decimal
    order_status: str
    discount_amount: Decimal
    used_at: datetime


@dataclass(frozen=True)
class UsageStats:
    promotion_id: uuid.UUID
    total_uses: int
    total_discount: Decimal
    average_discount: Decimal
    unique_users: int
    first_used_at: datetime | None = None
    last_used_at: datetime | None = None

    @property
    def revenue_impact(self) -> Decimal:
        return -self.total_discount


def clamp_page(page: int | None, limit: int | None) -> tuple[int, int]:
    config = getattr(settings, "PROMOTIONS", {})
    max_limit = int(config.get("MAX_PAGE_SIZE", 100))
    default_limit = int(config.get("PUBLIC_PAGE_SIZE", 20))
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or default_limit), 1), max_limit)
    return page, limit


def _paginate(queryset: QuerySet, page: int, limit: int) -> tuple[list[Any], int]:
    total = queryset.count()
    offset = (page - 1) * limit
    return list(queryset[offset : offset + limit]), total


def _display_name(user: Any) -> str:
    full_name = user.get_full_name() if hasattr(user, "get_full_name") else ""
    return full_name or user.get_username()


# ===============================================================================
# Promotion store
# ===============================================================================


class PromotionRepository:
    """Django ORM implementation of the promotion store."""

    # ---------------------------------------------------------------------------
    # Lookups
    # ---------------------------------------------------------------------------

    @staticmethod
    def _by_code(code: str) -> QuerySet[Promotion]:
        return Promotion.objects.alias(code_ci=Lower("code")).filter(code_ci=normalize_code(code).lower())

    @staticmethod
    def _active_at(now: datetime) -> Q:
        return (
            Q(is_active=True, starts_at__lte=now, expires_at__gte=now)
            & (Q(max_uses__isnull=True) | Q(current_uses__lt=F("max_uses")))
        )

    def find_by_id(self, promotion_id: uuid.UUID) -> Promotion | None:
        return Promotion.objects.filter(pk=promotion_id).first()

    def find_by_code(self, code: str) -> Promotion | None:
        return self._by_code(code).first()

    def find_by_code_active(self, code: str, now: datetime | None = None) -> Promotion | None:
        """The promotion for ``code`` if it is active, in its window and not exhausted."""
        now = now or timezone.now()
        return self._by_code(code).filter(self._active_at(now)).first()

    def find_by_codes(self, codes: set[str]) -> dict[str, Promotion]:
        normalized = {normalize_code(code) for code in codes if code}
        if not normalized:
            return {}
        return {promotion.code: promotion for promotion in Promotion.objects.filter(code__in=normalized)}

    def check_code_exists(self, code: str, exclude_id: uuid.UUID | None = None) -> bool:
        promotions = self._by_code(code)
        if exclude_id is not None:
            promotions = promotions.exclude(pk=exclude_id)
        return promotions.exists()

    def active_promotions(self, now: datetime) -> QuerySet[Promotion]:
        return Promotion.objects.filter(self._active_at(now))

    # ---------------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------------

    def _constraint_error(self, code: str | None, exclude_id: uuid.UUID | None = None) -> PromotionError:
        if code and self.check_code_exists(code, exclude_id=exclude_id):
            return PromotionError(
                PromotionErrorKind.DUPLICATE_CODE,
                f"Promotion code '{normalize_code(code)}' already exists",
                {"code": normalize_code(code)},
            )
        return PromotionError.invalid_bound("__all__", "constraint_violation", "Promotion violates a stored constraint")

    def create(self, data: dict[str, Any]) -> Result[Promotion, PromotionError]:
        """Insert a promotion with ``current_uses = 0`` and ``version = 0``."""
        values = {**data, "code": normalize_code(data["code"])}
        promotion = Promotion(**values)
        promotion.current_uses = 0
        promotion.version = 0
        try:
            with transaction.atomic():
                promotion.save(force_insert=True)
        except IntegrityError:
            return Err(self._constraint_error(values["code"]))
        return Ok(promotion)

    def update(
        self,
        promotion_id: uuid.UUID,
        expected_version: int,
        changes: dict[str, Any],
        expected_current_uses: int | None = None,
    ) -> Result[Promotion, PromotionError]:
        """
        Apply ``changes`` if the stored row is still at ``expected_version``.

        ``expected_current_uses`` additionally pins the usage counter, so a
        usage recorded after the caller inspected the row also causes a
        conflict.
        """
        values = dict(changes)
        values.pop("current_uses", None)
        values.pop("version", None)
        if "code" in values:
            values["code"] = normalize_code(values["code"])

        rows = Promotion.objects.filter(pk=promotion_id, version=expected_version)
        if expected_current_uses is not None:
            rows = rows.filter(current_uses=expected_current_uses)
        try:
            with transaction.atomic():
                updated = rows.update(**values, version=F("version") + 1, updated_at=timezone.now())
        except IntegrityError:
            return Err(self._constraint_error(values.get("code"), exclude_id=promotion_id))

        if updated == 0:
            if not Promotion.objects.filter(pk=promotion_id).exists():
                return Err(PromotionError.not_found())
            return Err(PromotionError.update_conflict())
        return Ok(Promotion.objects.get(pk=promotion_id))

    def update_status(self, promotion_id: uuid.UUID, is_active: bool) -> Result[Promotion, PromotionError]:
        updated = Promotion.objects.filter(pk=promotion_id).update(
            is_active=is_active,
            version=F("version") + 1,
            updated_at=timezone.now(),
        )
        if updated == 0:
            return Err(PromotionError.not_found())
        return Ok(Promotion.objects.get(pk=promotion_id))

    def soft_delete(self, promotion_id: uuid.UUID) -> Result[Promotion, PromotionError]:
        """Deactivate a promotion that has never been used."""
        # Conditional on current_uses so a concurrent first usage wins
        updated = Promotion.objects.filter(pk=promotion_id, current_uses=0).update(
            is_active=False,
            version=F("version") + 1,
            updated_at=timezone.now(),
        )
        if updated == 0:
            promotion = self.find_by_id(promotion_id)
            if promotion is None:
                return Err(PromotionError.not_found())
            return Err(
                PromotionError(
                    PromotionErrorKind.CANNOT_DELETE_IN_USE,
                    "Cannot delete a promotion that has already been used",
                    {"current_uses": promotion.current_uses},
                )
            )
        return Ok(Promotion.objects.get(pk=promotion_id))

    # ---------------------------------------------------------------------------
    # Usage
    # ---------------------------------------------------------------------------

    def count_user_usages(self, promotion_id: uuid.UUID, user_id: int) -> int:
        return PromotionUsage.objects.filter(promotion_id=promotion_id, user_id=user_id).count()

    def insert_usage(
        self,
        promotion_id: uuid.UUID,
        user_id: int,
        order_id: uuid.UUID,
        discount_amount: Decimal,
        using: str = "default",
    ) -> Result[PromotionUsage, PromotionError]:
        """
        Insert a usage row inside the caller's open transaction.

        The insert runs in a savepoint: a unique violation rolls back only the
        savepoint, leaving the caller's transaction usable.
        """
        if not connections[using].in_atomic_block:
            raise transaction.TransactionManagementError(
                "Promotion usage must be recorded inside the order transaction"
            )
        usage = PromotionUsage(
            promotion_id=promotion_id,
            user_id=user_id,
            order_id=order_id,
            discount_amount=discount_amount,
        )
        try:
            with transaction.atomic(using=using):
                usage.save(using=using, force_insert=True)
        except IntegrityError:
            if PromotionUsage.objects.using(using).filter(promotion_id=promotion_id, order_id=order_id).exists():
                return Err(
                    PromotionError(
                        PromotionErrorKind.DUPLICATE_USAGE,
                        "Promotion usage already recorded for this order",
                        {"promotion_id": str(promotion_id), "order_id": str(order_id)},
                    )
                )
            # The counter bump hit the max_uses CHECK: the last use went to another order
            promotion = Promotion.objects.using(using).filter(pk=promotion_id).first()
            if promotion is None or not promotion.is_exhausted:
                raise
            return Err(
                PromotionError(
                    PromotionErrorKind.USAGE_LIMIT_EXCEEDED,
                    "Promotion usage limit has been reached",
                    {"max_uses": promotion.max_uses, "current_uses": promotion.current_uses},
                )
            )
        return Ok(usage)

    def record_removal(
        self,
        cart_id: uuid.UUID,
        user_id: int | None,
        code: str,
        discount_at_removal: Decimal,
        reason: RemovalReason,
        metadata: dict[str, Any],
    ) -> PromotionRemovalAudit:
        return PromotionRemovalAudit.objects.create(
            cart_id=cart_id,
            user_id=user_id,
            code=code,
            discount_at_removal=discount_at_removal,
            reason=reason,
            metadata=metadata,
        )

    # ---------------------------------------------------------------------------
    # Listings & reporting
    # ---------------------------------------------------------------------------

    def list_active(
        self,
        now: datetime,
        category_id: uuid.UUID | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[Promotion]:
        promotions = Promotion.objects.filter(is_active=True, starts_at__lte=now, expires_at__gte=now)
        if category_id is not None:
            promotions = promotions.filter(
                Q(applicable_category_ids=[]) | Q(applicable_category_ids__icontains=str(category_id))
            )
        promotions = promotions.order_by("-starts_at", "id")
        items, total = _paginate(promotions, page, limit)
        return Page(items=items, total=total, page=page, limit=limit)

    def list_admin(self, filters: AdminListFilter, now: datetime) -> Page[AdminPromotionRow]:
        promotions = Promotion.objects.all()
        not_exhausted = Q(max_uses__isnull=True) | Q(current_uses__lt=F("max_uses"))

        status_filter = filters.status or "all"
        if status_filter == PromotionStatus.INACTIVE:
            promotions = promotions.filter(is_active=False)
        elif status_filter == PromotionStatus.UPCOMING:
            promotions = promotions.filter(is_active=True, starts_at__gt=now)
        elif status_filter == PromotionStatus.EXPIRED:
            promotions = promotions.filter(is_active=True, expires_at__lt=now)
        elif status_filter == PromotionStatus.EXHAUSTED:
            promotions = promotions.filter(
                is_active=True,
                starts_at__lte=now,
                expires_at__gte=now,
                max_uses__isnull=False,
                current_uses__gte=F("max_uses"),
            )
        elif status_filter == PromotionStatus.ACTIVE:
            promotions = promotions.filter(Q(is_active=True, starts_at__lte=now, expires_at__gte=now) & not_exhausted)

        search = (filters.search or "").strip()
        if search:
            promotions = promotions.filter(Q(code__icontains=search) | Q(name__icontains=search))

        promotions = promotions.order_by(*ADMIN_SORTS.get(filters.sort, ADMIN_SORTS[DEFAULT_ADMIN_SORT]))
        found, total = _paginate(promotions, filters.page, filters.limit)
        rows = [
            AdminPromotionRow(promotion=promotion, status=promotion.status_at(now), usage_rate=promotion.usage_rate)
            for promotion in found
        ]
        return Page(items=rows, total=total, page=filters.page, limit=filters.limit)

    @staticmethod
    def _usages_in_range(
        promotion_id: uuid.UUID,
        since: datetime | None,
        until: datetime | None,
    ) -> QuerySet[PromotionUsage]:
        usages = PromotionUsage.objects.filter(promotion_id=promotion_id)
        if since is not None:
            usages = usages.filter(used_at__gte=since)
        if until is not None:
            usages = usages.filter(used_at__lte=until)
        return usages

    def usage_history(
        self,
        promotion_id: uuid.UUID,
        since: datetime | None = None,
        until: datetime | None = None,
        user_id: int | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[UsageRecordView]:
        usages = self._usages_in_range(promotion_id, since, until).select_related("user", "order")
        if user_id is not None:
            usages = usages.filter(user_id=user_id)
        usages = usages.order_by("-used_at", "id")
        found, total = _paginate(usages, page, limit)
        records = [
            UsageRecordView(
                id=usage.id,
                user_id=usage.user_id,
                user_email=usage.user.email,
                user_full_name=_display_name(usage.user),
                order_id=usage.order_id,
                order_number=usage.order.order_number,
                order_total=usage.order.total,
                order_status=usage.order.status,
                discount_amount=usage.discount_amount,
                used_at=usage.used_at,
            )
            for usage in found
        ]
        return Page(items=records, total=total, page=page, limit=limit)

    def usage_stats(
        self,
        promotion_id: uuid.UUID,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> UsageStats:
        aggregates = self._usages_in_range(promotion_id, since, until).aggregate(
            total_uses=Count("id"),
            total_discount=Sum("discount_amount"),
            average_discount=Avg("discount_amount"),
            unique_users=Count("user", distinct=True),
            first_used_at=Min("used_at"),
            last_used_at=Max("used_at"),
        )
        average = aggregates["average_discount"]
        return UsageStats(
            promotion_id=promotion_id,
            total_uses=aggregates["total_uses"] or 0,
            total_discount=Decimal(aggregates["total_discount"] or ZERO),
            average_discount=Decimal(str(average)).quantize(Decimal("0.01")) if average is not None else ZERO,
            unique_users=aggregates["unique_users"] or 0,
            first_used_at=aggregates["first_used_at"],
            last_used_at=aggregates["last_used_at"],
        )
