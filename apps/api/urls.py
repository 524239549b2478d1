# ===============================================================================
# BOOKSTORE API MAIN URLS 🚀
# ===============================================================================
#
# Central API routing for all Bookstore Platform domains.
# This file is the single entry point for all API endpoints.
#
# URL Structure:
#   /api/promotions/  → Promotion codes: public listing, validation,
#                       cart application and admin management
#

from django.urls import include, path

from .promotions import urls as promotion_urls

app_name = "api"

# ===============================================================================
# API ROUTING 📍
# ===============================================================================

urlpatterns = [
    # Promotions & discount codes
    path("promotions/", include((promotion_urls, "promotions"))),
]
