# ===============================================================================
# BOOKSTORE API APP CONFIGURATION 🛠️
# ===============================================================================

from django.apps import AppConfig


class ApiConfig(AppConfig):
    """
    Configuration for the Bookstore Platform's centralized API app.

    This app provides REST API endpoints for the platform domains:
    - Promotions (storefront validation, cart application, back office)
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.api"
    label = "platform_api"  # Unique label to avoid conflicts
    verbose_name = "Bookstore Platform API"
