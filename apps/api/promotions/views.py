"""
Promotion API Views for the Bookstore Platform
DRF views for promotion listing, code validation, cart application and back-office management.
"""

import logging
import uuid
from typing import Any

from django.conf import settings
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.permissions import AllowAny, IsAdminUser, IsAuthenticated
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle

from apps.common.db import statement_deadline
from apps.common.logging import set_request_context
from apps.promotions.errors import PromotionError
from apps.promotions.models import normalize_code
from apps.promotions.repository import AdminListFilter
from apps.promotions.services import Promotions

from .serializers import (
    ActiveListQuerySerializer,
    AdminListQuerySerializer,
    AdminPromotionSerializer,
    ApplyInputSerializer,
    CheckCodeQuerySerializer,
    PromotionWriteSerializer,
    PublicPromotionSerializer,
    StatusInputSerializer,
    UsageQuerySerializer,
    ValidateInputSerializer,
    serialize_admin_detail,
    serialize_admin_row,
    serialize_available,
    serialize_cart,
    serialize_page,
    serialize_usage_record,
    serialize_usage_stats,
    serialize_validation,
)

logger = logging.getLogger(__name__)


# 🔒 SECURITY: Custom throttle classes for promotion endpoints
class PromoPublicThrottle(ScopedRateThrottle):
    """Throttling for the public promotion listing"""
    scope = "promo_public"


class PromoValidateThrottle(ScopedRateThrottle):
    """Throttling for code validation (slows down code enumeration)"""
    scope = "promo_validate"


class PromoApplyThrottle(ScopedRateThrottle):
    """Throttling for cart apply/remove endpoints"""
    scope = "promo_apply"


class PromoAdminThrottle(ScopedRateThrottle):
    """Throttling for back-office endpoints"""
    scope = "promo_admin"


# ===============================================================================
# Helpers
# ===============================================================================


def get_promotions() -> Promotions:
    return Promotions()


def _deadline() -> Any:
    return statement_deadline(settings.PROMOTIONS.get("STATEMENT_TIMEOUT_SECONDS"))


def _user_id(request: Request) -> int | None:
    user_id = request.user.pk if request.user and request.user.is_authenticated else None
    set_request_context(user_id=user_id)
    return user_id


def error_response(error: PromotionError) -> Response:
    return Response({"error": error.as_dict()}, status=error.http_status)


def invalid_input_response(errors: Any) -> Response:
    return Response(
        {
            "error": {
                "code": "VAL_INVALID_INPUT",
                "kind": "invalid_input",
                "message": "Invalid input",
                "details": errors,
            }
        },
        status=status.HTTP_400_BAD_REQUEST,
    )


# ===============================================================================
# Storefront
# ===============================================================================


@api_view(["GET"])
@permission_classes([AllowAny])
@throttle_classes([PromoPublicThrottle])
def active_promotions(request: Request) -> Response:
    """
    Public endpoint listing promotions that are live right now.
    Optional ``category`` limits the list to promotions that apply to it.
    """
    query = ActiveListQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return invalid_input_response(query.errors)

    with _deadline():
        result = get_promotions().list_active(
            query.validated_data.get("category"),
            query.validated_data.get("page"),
            query.validated_data.get("limit"),
        )
    if result.is_err():
        return error_response(result.unwrap_err())

    page = result.unwrap()
    return Response(serialize_page(page, PublicPromotionSerializer(page.items, many=True).data))


@api_view(["POST"])
@permission_classes([AllowAny])
@throttle_classes([PromoValidateThrottle])
def validate_code(request: Request) -> Response:
    """
    Check a code against a stored cart (``cart_id``) or inline ``items``.
    Anonymous callers are evaluated without per-user and first-order history.
    """
    serializer = ValidateInputSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    user_id = _user_id(request)
    code = serializer.validated_data["code"]
    promotions = get_promotions()
    with _deadline():
        if "cart_id" in serializer.validated_data:
            result = promotions.validate_for_cart(code, serializer.validated_data["cart_id"], user_id)
        else:
            result = promotions.validate(code, serializer.snapshot(), user_id)

    if result.is_err():
        logger.debug(f"🏷️ [Promotions API] Code {normalize_code(code)} rejected: {result.unwrap_err().kind.value}")
        return error_response(result.unwrap_err())
    return Response(serialize_validation(result.unwrap()))


# ===============================================================================
# Cart operations
# ===============================================================================


@api_view(["POST"])
@permission_classes([IsAuthenticated])
@throttle_classes([PromoApplyThrottle])
def apply_to_cart(request: Request, cart_id: uuid.UUID) -> Response:
    serializer = ApplyInputSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    user_id = _user_id(request)
    with _deadline():
        result = get_promotions().apply_to_cart(cart_id, user_id, serializer.validated_data["code"])
    if result.is_err():
        return error_response(result.unwrap_err())
    return Response(serialize_cart(result.unwrap()))


@api_view(["DELETE"])
@permission_classes([IsAuthenticated])
@throttle_classes([PromoApplyThrottle])
def remove_from_cart(request: Request, cart_id: uuid.UUID) -> Response:
    user_id = _user_id(request)
    with _deadline():
        result = get_promotions().remove_from_cart(cart_id, user_id)
    if result.is_err():
        return error_response(result.unwrap_err())
    return Response(serialize_cart(result.unwrap()))


@api_view(["GET"])
@permission_classes([IsAuthenticated])
@throttle_classes([PromoValidateThrottle])
def available_for_cart(request: Request, cart_id: uuid.UUID) -> Response:
    """Promotions the cart qualifies for right now, biggest discount first."""
    user_id = _user_id(request)
    with _deadline():
        result = get_promotions().available_for_cart(cart_id, user_id)
    if result.is_err():
        return error_response(result.unwrap_err())
    items = [serialize_available(item) for item in result.unwrap()]
    return Response({"results": items, "count": len(items)})


# ===============================================================================
# Back office
# ===============================================================================


@api_view(["GET", "POST"])
@permission_classes([IsAdminUser])
@throttle_classes([PromoAdminThrottle])
def admin_promotions(request: Request) -> Response:
    _user_id(request)
    promotions = get_promotions()

    if request.method == "POST":
        serializer = PromotionWriteSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid_input_response(serializer.errors)
        data, _version = serializer.changes()
        with _deadline():
            result = promotions.create(data)
        if result.is_err():
            return error_response(result.unwrap_err())
        logger.info(f"🏷️ [Promotions API] Promotion {result.unwrap().code} created by {request.user.pk}")
        return Response(AdminPromotionSerializer(result.unwrap()).data, status=status.HTTP_201_CREATED)

    query = AdminListQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return invalid_input_response(query.errors)
    with _deadline():
        result = promotions.list_admin(AdminListFilter(**query.validated_data))
    if result.is_err():
        return error_response(result.unwrap_err())
    page = result.unwrap()
    return Response(serialize_page(page, [serialize_admin_row(row) for row in page.items]))


@api_view(["GET", "PATCH", "DELETE"])
@permission_classes([IsAdminUser])
@throttle_classes([PromoAdminThrottle])
def admin_promotion_detail(request: Request, promotion_id: uuid.UUID) -> Response:
    _user_id(request)
    promotions = get_promotions()

    if request.method == "PATCH":
        serializer = PromotionWriteSerializer(data=request.data, partial=True)
        if not serializer.is_valid():
            return invalid_input_response(serializer.errors)
        changes, version = serializer.changes()
        with _deadline():
            result = promotions.update(promotion_id, changes, expected_version=version)
    elif request.method == "DELETE":
        with _deadline():
            result = promotions.soft_delete(promotion_id)
    else:
        with _deadline():
            result = promotions.get(promotion_id)
            stats = promotions.usage_stats(promotion_id) if result.is_ok() else result
        if stats.is_err():
            return error_response(stats.unwrap_err())
        return Response(serialize_admin_detail(result.unwrap(), stats.unwrap(), promotions.clock.now()))

    if result.is_err():
        return error_response(result.unwrap_err())
    return Response(AdminPromotionSerializer(result.unwrap()).data)


@api_view(["POST"])
@permission_classes([IsAdminUser])
@throttle_classes([PromoAdminThrottle])
def admin_set_status(request: Request, promotion_id: uuid.UUID) -> Response:
    serializer = StatusInputSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)
    _user_id(request)
    with _deadline():
        result = get_promotions().set_status(promotion_id, serializer.validated_data["is_active"])
    if result.is_err():
        return error_response(result.unwrap_err())
    return Response(AdminPromotionSerializer(result.unwrap()).data)


@api_view(["GET"])
@permission_classes([IsAdminUser])
@throttle_classes([PromoAdminThrottle])
def admin_usage_history(request: Request, promotion_id: uuid.UUID) -> Response:
    query = UsageQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return invalid_input_response(query.errors)
    with _deadline():
        result = get_promotions().usage_history(promotion_id, **query.validated_data)
    if result.is_err():
        return error_response(result.unwrap_err())
    page = result.unwrap()
    return Response(serialize_page(page, [serialize_usage_record(record) for record in page.items]))


@api_view(["GET"])
@permission_classes([IsAdminUser])
@throttle_classes([PromoAdminThrottle])
def admin_usage_stats(request: Request, promotion_id: uuid.UUID) -> Response:
    query = UsageQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return invalid_input_response(query.errors)
    filters = {key: query.validated_data[key] for key in ("since", "until") if key in query.validated_data}
    with _deadline():
        result = get_promotions().usage_stats(promotion_id, **filters)
    if result.is_err():
        return error_response(result.unwrap_err())
    return Response(serialize_usage_stats(result.unwrap()))


@api_view(["GET"])
@permission_classes([IsAdminUser])
@throttle_classes([PromoAdminThrottle])
def admin_check_code(request: Request) -> Response:
    """Tell the admin form whether a code is taken (optionally ignoring the promotion being edited)."""
    query = CheckCodeQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return invalid_input_response(query.errors)
    code = query.validated_data["code"]
    with _deadline():
        result = get_promotions().check_code_exists(code, query.validated_data.get("exclude_id"))
    if result.is_err():
        return error_response(result.unwrap_err())
    return Response({"code": normalize_code(code), "exists": result.unwrap()})
