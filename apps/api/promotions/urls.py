"""
Promotion API URLs for the Bookstore Platform
Public, customer and admin endpoints for promotion codes.
"""

from django.urls import path

from . import views

app_name = "promotions"

urlpatterns = [
    # Storefront (public endpoints)
    path("active/", views.active_promotions, name="active"),
    path("validate/", views.validate_code, name="validate"),
    # Cart operations (customer authenticated)
    path("carts/<uuid:cart_id>/", views.remove_from_cart, name="cart_remove"),
    path("carts/<uuid:cart_id>/apply/", views.apply_to_cart, name="cart_apply"),
    path("carts/<uuid:cart_id>/available/", views.available_for_cart, name="cart_available"),
    # Back office (staff only)
    path("admin/", views.admin_promotions, name="admin_list"),
    path("admin/check-code/", views.admin_check_code, name="admin_check_code"),
    path("admin/<uuid:promotion_id>/", views.admin_promotion_detail, name="admin_detail"),
    path("admin/<uuid:promotion_id>/status/", views.admin_set_status, name="admin_status"),
    path("admin/<uuid:promotion_id>/usage/", views.admin_usage_history, name="admin_usage"),
    path("admin/<uuid:promotion_id>/stats/", views.admin_usage_stats, name="admin_stats"),
]
