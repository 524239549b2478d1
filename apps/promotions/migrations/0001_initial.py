import decimal
import uuid

import django.db.models.deletion
import django.db.models.functions.text
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("orders", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Promotion",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "code",
                    models.CharField(help_text="Customer-facing code (case-insensitive)", max_length=50, unique=True),
                ),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "discount_type",
                    models.CharField(choices=[("percentage", "Percentage"), ("fixed", "Fixed amount")], max_length=20),
                ),
                (
                    "discount_value",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Percentage (0-100] or fixed amount in minor units",
                        max_digits=12,
                    ),
                ),
                (
                    "max_discount_amount",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Cap for percentage discounts",
                        max_digits=12,
                        null=True,
                    ),
                ),
                ("min_order_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), max_digits=12)),
                (
                    "applicable_category_ids",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Category UUIDs the promotion is restricted to; empty applies to all",
                    ),
                ),
                ("first_order_only", models.BooleanField(default=False)),
                (
                    "max_uses",
                    models.PositiveIntegerField(blank=True, help_text="Global limit; empty = unlimited", null=True),
                ),
                ("max_uses_per_user", models.PositiveIntegerField(default=1)),
                ("current_uses", models.PositiveIntegerField(default=0, editable=False)),
                ("starts_at", models.DateTimeField()),
                ("expires_at", models.DateTimeField()),
                ("is_active", models.BooleanField(default=True)),
                ("version", models.PositiveIntegerField(default=0, editable=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Promotion",
                "verbose_name_plural": "Promotions",
                "db_table": "promotions",
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(fields=["is_active", "starts_at", "expires_at"], name="idx_promotions_active"),
                    models.Index(fields=["expires_at"], name="idx_promotions_expires"),
                ],
                "constraints": [
                    models.UniqueConstraint(django.db.models.functions.text.Lower("code"), name="uniq_promotions_code_ci"),
                    models.CheckConstraint(
                        condition=models.Q(("expires_at__gt", models.F("starts_at"))),
                        name="promotions_valid_window",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(
                                ("discount_type", "percentage"),
                                ("discount_value__gt", 0),
                                ("discount_value__lte", decimal.Decimal("100")),
                            ),
                            models.Q(("discount_type", "fixed"), ("discount_value__gt", 0)),
                            _connector="OR",
                        ),
                        name="promotions_discount_value_range",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("max_discount_amount__isnull", True),
                            ("max_discount_amount__gt", 0),
                            _connector="OR",
                        ),
                        name="promotions_max_discount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("min_order_amount__gte", 0)),
                        name="promotions_min_order_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("max_uses_per_user__gte", 1)),
                        name="promotions_per_user_at_least_one",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("max_uses__isnull", True),
                            ("max_uses__gte", models.F("current_uses")),
                            _connector="OR",
                        ),
                        name="promotions_uses_within_limit",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PromotionUsage",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("discount_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("used_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("version", models.PositiveIntegerField(default=0, editable=False)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="promotion_usages",
                        to="orders.order",
                    ),
                ),
                (
                    "promotion",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="usages",
                        to="promotions.promotion",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="promotion_usages",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Promotion usage",
                "verbose_name_plural": "Promotion usages",
                "db_table": "promotion_usage",
                "ordering": ("-used_at",),
                "indexes": [
                    models.Index(fields=["promotion", "user"], name="idx_promotion_usage_user"),
                    models.Index(fields=["promotion", "-used_at"], name="idx_promotion_usage_time"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("promotion", "order"), name="uniq_promotion_usage_per_order"),
                    models.CheckConstraint(
                        condition=models.Q(("discount_amount__gte", 0)),
                        name="promotion_usage_discount_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PromotionRemovalAudit",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("cart_id", models.UUIDField(db_index=True)),
                ("code", models.CharField(max_length=50)),
                ("discount_at_removal", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "reason",
                    models.CharField(
                        choices=[
                            ("expired", "Expired"),
                            ("deactivated", "Deactivated"),
                            ("max_uses_reached", "Global usage limit reached"),
                            ("min_order_no_longer_met", "Minimum order no longer met"),
                            ("user_limit_reached", "Per-user limit reached"),
                            ("category_no_longer_applicable", "No applicable category in cart"),
                            ("first_order_rule_violated", "First-order rule violated"),
                        ],
                        max_length=40,
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("occurred_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="promotion_removals",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Promotion removal",
                "verbose_name_plural": "Promotion removals",
                "db_table": "promotion_removal_audit",
                "ordering": ("-occurred_at",),
                "indexes": [models.Index(fields=["code", "-occurred_at"], name="idx_promo_removal_code")],
            },
        ),
    ]
