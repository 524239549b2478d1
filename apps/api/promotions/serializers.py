"""
Promotion API Serializers for the Bookstore Platform
DRF serializers for promotion listing, validation, cart application and admin endpoints.
"""

from datetime import datetime
from typing import Any

from rest_framework import serializers

from apps.promotions.interfaces import CartLine, CartSnapshot, CartView
from apps.promotions.models import DiscountType, Promotion
from apps.promotions.repository import (
    ADMIN_SORTS,
    ADMIN_STATUS_FILTERS,
    DEFAULT_ADMIN_SORT,
    AdminPromotionRow,
    Page,
    UsageRecordView,
    UsageStats,
)
from apps.promotions.services import AvailablePromotion, ValidationResult

# ===============================================================================
# Output serializers
# ===============================================================================


class PublicPromotionSerializer(serializers.ModelSerializer):
    """Customer-facing promotion info for storefront listings"""

    class Meta:
        model = Promotion
        fields = [
            "id", "code", "name", "description",
            "discount_type", "discount_value", "max_discount_amount",
            "min_order_amount", "applicable_category_ids", "first_order_only",
            "starts_at", "expires_at",
        ]


class AdminPromotionSerializer(serializers.ModelSerializer):
    """Full promotion record for the back office"""

    remaining_uses = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = Promotion
        fields = [
            "id", "code", "name", "description",
            "discount_type", "discount_value", "max_discount_amount",
            "min_order_amount", "applicable_category_ids", "first_order_only",
            "max_uses", "max_uses_per_user", "current_uses", "remaining_uses",
            "starts_at", "expires_at", "is_active", "version",
            "created_at", "updated_at",
        ]


def serialize_admin_row(row: AdminPromotionRow) -> dict[str, Any]:
    return {
        **AdminPromotionSerializer(row.promotion).data,
        "status": row.status.value,
        "usage_rate": row.usage_rate,
    }


class UsageRecordSerializer(serializers.Serializer):
    """One usage row joined with its user and order"""

    id = serializers.UUIDField()
    user_id = serializers.IntegerField()
    user_email = serializers.EmailField()
    user_full_name = serializers.CharField()
    order_id = serializers.UUIDField()
    order_number = serializers.CharField()
    order_total = serializers.DecimalField(max_digits=12, decimal_places=2)
    order_status = serializers.CharField()
    discount_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    used_at = serializers.DateTimeField()


class UsageStatsSerializer(serializers.Serializer):
    """Aggregated usage of one promotion"""

    promotion_id = serializers.UUIDField()
    total_uses = serializers.IntegerField()
    total_discount = serializers.DecimalField(max_digits=14, decimal_places=2)
    average_discount = serializers.DecimalField(max_digits=14, decimal_places=2)
    unique_users = serializers.IntegerField()
    revenue_impact = serializers.DecimalField(max_digits=14, decimal_places=2)
    first_used_at = serializers.DateTimeField(allow_null=True)
    last_used_at = serializers.DateTimeField(allow_null=True)


def serialize_page(page: Page, items: list[Any]) -> dict[str, Any]:
    return {
        "results": items,
        "count": page.total,
        "page": page.page,
        "limit": page.limit,
        "pages": page.pages,
        "has_next": page.has_next,
    }


def serialize_cart(cart: CartView) -> dict[str, Any]:
    return {
        "cart_id": str(cart.cart_id),
        "promo_code": cart.promo_code,
        "discount_amount": str(cart.discount_amount),
        "subtotal": str(cart.subtotal),
        "total": str(cart.total),
        "items": [
            {
                "book_id": str(line.book_id),
                "category_id": str(line.category_id) if line.category_id else None,
                "unit_price": str(line.unit_price),
                "quantity": line.quantity,
                "line_total": str(line.line_total),
            }
            for line in cart.lines
        ],
    }


def serialize_validation(result: ValidationResult) -> dict[str, Any]:
    promotion = result.promotion
    return {
        "valid": True,
        "message": result.message,
        "promotion": {
            "id": str(promotion.id),
            "code": promotion.code,
            "name": promotion.name,
            "description": promotion.description,
            "discount_type": promotion.discount_type,
            "discount_value": str(promotion.discount_value),
            "max_discount_amount": (
                str(promotion.max_discount_amount) if promotion.max_discount_amount is not None else None
            ),
            "min_order_amount": str(promotion.min_order_amount),
            "expires_at": promotion.expires_at.isoformat(),
        },
        "subtotal": str(result.subtotal),
        "discount_amount": str(result.discount_amount),
        "final_amount": str(result.final_amount),
        "remaining_global_uses": result.remaining_global_uses,
        "remaining_user_uses": result.remaining_user_uses,
    }


def serialize_available(item: AvailablePromotion) -> dict[str, Any]:
    return {
        "id": str(item.promotion.id),
        "code": item.promotion.code,
        "name": item.promotion.name,
        "discount_type": item.promotion.discount_type,
        "discount_value": str(item.promotion.discount_value),
        "discount_amount": str(item.discount_amount),
        "final_amount": str(item.final_amount),
        "expires_at": item.promotion.expires_at.isoformat(),
    }


def serialize_usage_record(record: UsageRecordView) -> dict[str, Any]:
    return UsageRecordSerializer(record).data


def serialize_usage_stats(stats: UsageStats) -> dict[str, Any]:
    return UsageStatsSerializer(stats).data


def serialize_admin_detail(promotion: Promotion, stats: UsageStats, now: datetime) -> dict[str, Any]:
    """Promotion record with its derived status, usage rate and usage stats"""
    return {
        **AdminPromotionSerializer(promotion).data,
        "status": promotion.status_at(now).value,
        "usage_rate": promotion.usage_rate,
        "usage_stats": serialize_usage_stats(stats),
    }


# ===============================================================================
# Input serializers
# ===============================================================================


class CartLineInputSerializer(serializers.Serializer):
    """Inline cart line for validating a code without a stored cart"""

    book_id = serializers.UUIDField()
    category_id = serializers.UUIDField(required=False, allow_null=True)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    quantity = serializers.IntegerField(min_value=1, max_value=999)


class ValidateInputSerializer(serializers.Serializer):
    """Input serializer for code validation: a stored cart or inline items"""

    code = serializers.CharField(max_length=50)
    cart_id = serializers.UUIDField(required=False)
    items = CartLineInputSerializer(many=True, required=False)

    def validate(self, attrs: dict[str, Any]) -> dict[str, Any]:
        if "cart_id" not in attrs and "items" not in attrs:
            raise serializers.ValidationError("Provide either cart_id or items")
        return attrs

    def snapshot(self) -> CartSnapshot:
        return CartSnapshot.from_lines(
            CartLine(
                book_id=item["book_id"],
                category_id=item.get("category_id"),
                unit_price=item["unit_price"],
                quantity=item["quantity"],
            )
            for item in self.validated_data.get("items", [])
        )


class ApplyInputSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50)


class PromotionWriteSerializer(serializers.Serializer):
    """
    Input serializer for promotion create (full) and update (partial=True).
    Business rules (windows, in-use restrictions) are enforced by the service.
    """

    code = serializers.CharField(max_length=50)
    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    discount_type = serializers.ChoiceField(choices=DiscountType.choices)
    discount_value = serializers.DecimalField(max_digits=12, decimal_places=2)
    max_discount_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    min_order_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, default=0)
    applicable_category_ids = serializers.ListField(child=serializers.UUIDField(), required=False, default=list)
    first_order_only = serializers.BooleanField(required=False, default=False)
    max_uses = serializers.IntegerField(required=False, allow_null=True)
    max_uses_per_user = serializers.IntegerField(required=False, default=1)
    starts_at = serializers.DateTimeField()
    expires_at = serializers.DateTimeField()
    is_active = serializers.BooleanField(required=False, default=True)

    # Optimistic lock token for updates
    version = serializers.IntegerField(required=False, min_value=0)

    def changes(self) -> tuple[dict[str, Any], int | None]:
        data = dict(self.validated_data)
        version = data.pop("version", None)
        if "applicable_category_ids" in data:
            data["applicable_category_ids"] = [str(category_id) for category_id in data["applicable_category_ids"]]
        return data, version


class StatusInputSerializer(serializers.Serializer):
    is_active = serializers.BooleanField()


class AdminListQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=ADMIN_STATUS_FILTERS, required=False, default="all")
    search = serializers.CharField(required=False, allow_blank=True, default="")
    sort = serializers.ChoiceField(choices=tuple(ADMIN_SORTS), required=False, default=DEFAULT_ADMIN_SORT)
    page = serializers.IntegerField(required=False, min_value=1, default=1)
    limit = serializers.IntegerField(required=False, min_value=1, default=20)


class ActiveListQuerySerializer(serializers.Serializer):
    category = serializers.UUIDField(required=False)
    page = serializers.IntegerField(required=False, min_value=1)
    limit = serializers.IntegerField(required=False, min_value=1)


class UsageQuerySerializer(serializers.Serializer):
    since = serializers.DateTimeField(required=False)
    until = serializers.DateTimeField(required=False)
    user_id = serializers.IntegerField(required=False)
    page = serializers.IntegerField(required=False, min_value=1)
    limit = serializers.IntegerField(required=False, min_value=1)


class CheckCodeQuerySerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50)
    exclude_id = serializers.UUIDField(required=False)
