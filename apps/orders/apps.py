"""
Orders app configuration for the Bookstore Platform.
"""

from django.apps import AppConfig


class OrdersConfig(AppConfig):
    """Configuration for the Orders app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.orders"
    verbose_name = "Orders"
