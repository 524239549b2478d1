"""
Tests for the promotion error taxonomy and the database error boundary.
"""

from datetime import UTC, datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

from django.db import DatabaseError, IntegrityError
from django.test import TestCase

from apps.common.types import Ok
from apps.promotions.errors import (
    GENERIC_INFRASTRUCTURE_MESSAGE,
    PromotionError,
    PromotionErrorKind,
    translate_database_errors,
)
from apps.promotions.services import Promotions


def _database_error(pgcode=None):
    exc = DatabaseError("boom: relation promotions does not exist")
    cause = Exception()
    cause.pgcode = pgcode
    exc.__cause__ = cause
    return exc


class PromotionErrorTests(TestCase):
    def test_every_kind_has_a_code(self):
        for kind in PromotionErrorKind:
            with self.subTest(kind=kind):
                self.assertTrue(kind.code)

    def test_http_status_mapping(self):
        self.assertEqual(PromotionErrorKind.NOT_FOUND.http_status, 404)
        self.assertEqual(PromotionErrorKind.DUPLICATE_CODE.http_status, 409)
        self.assertEqual(PromotionErrorKind.INVALID_BOUND.http_status, 400)
        self.assertEqual(PromotionErrorKind.EXPIRED.http_status, 422)
        self.assertEqual(PromotionErrorKind.STORE_UNAVAILABLE.http_status, 503)
        self.assertEqual(PromotionErrorKind.TIMEOUT.http_status, 504)

    def test_as_dict_is_json_ready(self):
        error = PromotionError(
            PromotionErrorKind.MIN_ORDER_NOT_MET,
            "Add more",
            {"needed_amount": Decimal("50000"), "at": datetime(2026, 1, 1, tzinfo=UTC), "ids": ("a", "b")},
        )

        self.assertEqual(
            error.as_dict(),
            {
                "code": "PROMO_MIN_ORDER_NOT_MET",
                "kind": "min_order_not_met",
                "message": "Add more",
                "details": {"needed_amount": "50000", "at": "2026-01-01T00:00:00+00:00", "ids": ["a", "b"]},
            },
        )


class TranslateDatabaseErrorsTests(TestCase):
    def test_success_passes_through(self):
        @translate_database_errors
        def ok():
            return Ok(42)

        self.assertEqual(ok().unwrap(), 42)

    def test_database_error_becomes_store_unavailable(self):
        @translate_database_errors
        def broken():
            raise _database_error()

        with self.assertLogs("apps.promotions.errors", level="ERROR"):
            error = broken().unwrap_err()

        self.assertEqual(error.kind, PromotionErrorKind.STORE_UNAVAILABLE)
        self.assertEqual(error.message, GENERIC_INFRASTRUCTURE_MESSAGE)
        self.assertNotIn("relation", str(error.as_dict()))

    def test_cancelled_statement_becomes_timeout(self):
        @translate_database_errors
        def slow():
            raise _database_error(pgcode="57014")

        with self.assertLogs("apps.promotions.errors", level="ERROR"):
            self.assertEqual(slow().unwrap_err().kind, PromotionErrorKind.TIMEOUT)

    def test_integrity_error_is_not_swallowed(self):
        @translate_database_errors
        def conflicting():
            raise IntegrityError("duplicate key")

        with self.assertRaises(IntegrityError):
            conflicting()

    def test_facade_validate_store_failure(self):
        promotions = Promotions()

        with patch.object(promotions.store, "find_by_code_active", side_effect=_database_error()), self.assertLogs(
            "apps.promotions.errors", level="ERROR"
        ):
            result = promotions.validate("SAVE20", SimpleNamespace(subtotal=Decimal("1"), category_ids=set()))

        self.assertEqual(result.unwrap_err().kind, PromotionErrorKind.STORE_UNAVAILABLE)
