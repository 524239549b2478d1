"""
Promotion error taxonomy.

Every failure the promotion services report is a PromotionError carrying one
PromotionErrorKind and an optional detail payload. Services return them inside
``Err`` (apps.common.types); the API layer maps them to HTTP responses.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ParamSpec, TypeVar

from django.db import DatabaseError, IntegrityError, transaction
from rest_framework import status

from apps.common.db import is_query_canceled
from apps.common.types import Err

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


class PromotionErrorKind(str, Enum):
    # Validation-time, user-visible
    NOT_FOUND = "not_found"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"
    USER_LIMIT_EXCEEDED = "user_limit_exceeded"
    MIN_ORDER_NOT_MET = "min_order_not_met"
    FIRST_ORDER_ONLY = "first_order_only"
    CATEGORY_NOT_APPLICABLE = "category_not_applicable"
    CART_NOT_FOUND = "cart_not_found"
    CART_EMPTY = "cart_empty"

    # Admin-time
    DUPLICATE_CODE = "duplicate_code"
    INVALID_TIME_WINDOW = "invalid_time_window"
    INVALID_BOUND = "invalid_bound"
    UPDATE_CONFLICT = "update_conflict"
    CANNOT_DELETE_IN_USE = "cannot_delete_in_use"
    DUPLICATE_USAGE = "duplicate_usage"

    # Infrastructure
    STORE_UNAVAILABLE = "store_unavailable"
    TIMEOUT = "timeout"

    @property
    def code(self) -> str:
        return _ERROR_CODES[self]

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self, status.HTTP_422_UNPROCESSABLE_ENTITY)

    @property
    def is_infrastructure(self) -> bool:
        return self in (PromotionErrorKind.STORE_UNAVAILABLE, PromotionErrorKind.TIMEOUT)


_ERROR_CODES: dict[PromotionErrorKind, str] = {
    PromotionErrorKind.NOT_FOUND: "PROMO_NOT_FOUND",
    PromotionErrorKind.NOT_STARTED: "PROMO_NOT_STARTED",
    PromotionErrorKind.EXPIRED: "PROMO_EXPIRED",
    PromotionErrorKind.USAGE_LIMIT_EXCEEDED: "PROMO_USAGE_LIMIT_EXCEEDED",
    PromotionErrorKind.USER_LIMIT_EXCEEDED: "PROMO_USER_LIMIT_EXCEEDED",
    PromotionErrorKind.MIN_ORDER_NOT_MET: "PROMO_MIN_ORDER_NOT_MET",
    PromotionErrorKind.FIRST_ORDER_ONLY: "PROMO_FIRST_ORDER_ONLY",
    PromotionErrorKind.CATEGORY_NOT_APPLICABLE: "PROMO_CATEGORY_NOT_APPLICABLE",
    PromotionErrorKind.CART_NOT_FOUND: "CART_NOT_FOUND",
    PromotionErrorKind.CART_EMPTY: "CART_EMPTY",
    PromotionErrorKind.DUPLICATE_CODE: "VAL_DUPLICATE_CODE",
    PromotionErrorKind.INVALID_TIME_WINDOW: "VAL_INVALID_TIME_WINDOW",
    PromotionErrorKind.INVALID_BOUND: "VAL_INVALID_BOUND",
    PromotionErrorKind.UPDATE_CONFLICT: "BIZ_UPDATE_CONFLICT",
    PromotionErrorKind.CANNOT_DELETE_IN_USE: "BIZ_CANNOT_DELETE_USED_PROMO",
    PromotionErrorKind.DUPLICATE_USAGE: "BIZ_DUPLICATE_USAGE",
    PromotionErrorKind.STORE_UNAVAILABLE: "SYS_INTERNAL_ERROR",
    PromotionErrorKind.TIMEOUT: "SYS_TIMEOUT",
}

_HTTP_STATUS: dict[PromotionErrorKind, int] = {
    PromotionErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    PromotionErrorKind.CART_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    PromotionErrorKind.DUPLICATE_CODE: status.HTTP_409_CONFLICT,
    PromotionErrorKind.UPDATE_CONFLICT: status.HTTP_409_CONFLICT,
    PromotionErrorKind.DUPLICATE_USAGE: status.HTTP_409_CONFLICT,
    PromotionErrorKind.CANNOT_DELETE_IN_USE: status.HTTP_409_CONFLICT,
    PromotionErrorKind.INVALID_TIME_WINDOW: status.HTTP_400_BAD_REQUEST,
    PromotionErrorKind.INVALID_BOUND: status.HTTP_400_BAD_REQUEST,
    PromotionErrorKind.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    PromotionErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}

GENERIC_INFRASTRUCTURE_MESSAGE = "The promotion service is temporarily unavailable. Please try again."


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return value


@dataclass(frozen=True)
class PromotionError:
    """A typed promotion failure with an optional detail payload."""

    kind: PromotionErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    @property
    def code(self) -> str:
        return self.kind.code

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "details": {key: _jsonable(value) for key, value in self.details.items()},
        }

    # ---------------------------------------------------------------------------
    # Constructors for the kinds raised from more than one place
    # ---------------------------------------------------------------------------

    @classmethod
    def not_found(cls, code: str = "") -> PromotionError:
        details = {"code": code} if code else {}
        return cls(PromotionErrorKind.NOT_FOUND, "Promotion code not found", details)

    @classmethod
    def invalid_bound(cls, field_name: str, reason: str, message: str) -> PromotionError:
        return cls(PromotionErrorKind.INVALID_BOUND, message, {"field": field_name, "reason": reason})

    @classmethod
    def update_conflict(cls) -> PromotionError:
        return cls(
            PromotionErrorKind.UPDATE_CONFLICT,
            "The promotion was modified concurrently. Reload and try again.",
        )

    @classmethod
    def infrastructure(cls, kind: PromotionErrorKind) -> PromotionError:
        return cls(kind, GENERIC_INFRASTRUCTURE_MESSAGE)


# ===============================================================================
# Infrastructure boundary
# ===============================================================================


def translate_database_errors(func: Callable[P, R]) -> Callable[P, R | Err[PromotionError]]:
    """
    Turn database failures inside a service call into a generic ``Err``.

    The call runs in a savepoint so a failed statement leaves any outer
    transaction usable. IntegrityError is left to the caller; the store maps
    it to business kinds. The cause is logged here, once, and never returned.
    """

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | Err[PromotionError]:
        try:
            with transaction.atomic():
                return func(*args, **kwargs)
        except IntegrityError:
            raise
        except DatabaseError as exc:
            kind = PromotionErrorKind.TIMEOUT if is_query_canceled(exc) else PromotionErrorKind.STORE_UNAVAILABLE
            logger.exception(
                f"🔥 [Promotions] {func.__qualname__} failed: {kind.value}",
                extra={"operation": func.__qualname__, "error_kind": kind.value},
            )
            return Err(PromotionError.infrastructure(kind))

    return wrapper
