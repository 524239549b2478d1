"""
Carts app configuration for the Bookstore Platform.
"""

from django.apps import AppConfig


class CartsConfig(AppConfig):
    """Configuration for the Carts app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.carts"
    verbose_name = "Shopping Carts"
