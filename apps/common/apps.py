"""
Common app configuration for the Bookstore Platform.
"""

from django.apps import AppConfig


class CommonConfig(AppConfig):
    """Shared types, logging context and database helpers."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.common"
    verbose_name = "Common"
