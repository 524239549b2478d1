import decimal
import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Cart",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("session_id", models.CharField(blank=True, default="", max_length=64)),
                ("promo_code", models.CharField(blank=True, max_length=50, null=True)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), max_digits=12)),
                ("promo_metadata", models.JSONField(blank=True, default=dict)),
                ("version", models.PositiveIntegerField(default=0)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="carts",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Cart",
                "verbose_name_plural": "Carts",
                "db_table": "carts",
                "indexes": [
                    models.Index(
                        condition=models.Q(("promo_code__isnull", False)),
                        fields=["promo_code"],
                        name="idx_carts_promo_code",
                    )
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("discount_amount__gte", 0)),
                        name="carts_discount_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("promo_code__isnull", False), ("discount_amount", 0), _connector="OR"),
                        name="carts_discount_requires_code",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CartItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("book_id", models.UUIDField()),
                ("category_id", models.UUIDField(blank=True, null=True)),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("added_at", models.DateTimeField(auto_now_add=True)),
                (
                    "cart",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="carts.cart",
                    ),
                ),
            ],
            options={
                "verbose_name": "Cart item",
                "verbose_name_plural": "Cart items",
                "db_table": "cart_items",
                "constraints": [
                    models.UniqueConstraint(fields=("cart", "book_id"), name="uniq_cart_items_book"),
                    models.CheckConstraint(condition=models.Q(("quantity__gte", 1)), name="cart_items_quantity_positive"),
                ],
            },
        ),
    ]
