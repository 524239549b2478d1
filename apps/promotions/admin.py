"""
Django Admin configuration for the Promotions app.

Usage counters are maintained by the database and shown read-only; usage
records and removal audits are append-only and cannot be edited here.
Promotion edits go through PromotionAdminService, so the in-use rules and
optimistic locking apply to the change form as they do to the API.
"""

from django import forms
from django.contrib import admin, messages
from django.core.exceptions import ValidationError
from django.http import HttpResponseRedirect
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .admin_service import EDITABLE_FIELDS, IMMUTABLE_WHEN_IN_USE, PromotionAdminService
from .models import Promotion, PromotionRemovalAudit, PromotionUsage
from .repository import PromotionRepository

# ===============================================================================
# Forms
# ===============================================================================


class PromotionAdminForm(forms.ModelForm):
    """Change form carrying the version the editor was shown."""

    expected_version = forms.IntegerField(widget=forms.HiddenInput, required=False)

    class Meta:
        model = Promotion
        fields = "__all__"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if not self.instance._state.adding:
            self.fields["expected_version"].initial = self.instance.version

    def promotion_changes(self):
        return {name: self.cleaned_data[name] for name in self.changed_data if name in EDITABLE_FIELDS}

    def clean(self):
        cleaned_data = super().clean()
        if self.instance._state.adding or self.errors:
            return cleaned_data

        expected_version = cleaned_data.get("expected_version")
        if expected_version is not None and expected_version != self.instance.version:
            raise ValidationError(_("This promotion was changed by someone else. Reload and try again."))

        # Runs against the stored row, before the form copies its values onto it
        prepared = PromotionAdminService(PromotionRepository()).prepare_update(self.instance, self.promotion_changes())
        if prepared.is_err():
            error = prepared.unwrap_err()
            field_name = error.details.get("field")
            if error.details.get("starts_at") is not None:
                field_name = "expires_at"
            elif "code" in error.details:
                field_name = "code"
            self.add_error(field_name if field_name in self.fields else None, error.message)
        return cleaned_data


# ===============================================================================
# Inline Admin Classes
# ===============================================================================


class PromotionUsageInline(admin.TabularInline):
    """Inline for usages within a promotion."""

    model = PromotionUsage
    extra = 0
    readonly_fields = ("user", "order", "discount_amount", "used_at")
    fields = ("user", "order", "discount_amount", "used_at")
    can_delete = False
    max_num = 0


# ===============================================================================
# Model Admin Classes
# ===============================================================================


@admin.register(Promotion)
class PromotionAdmin(admin.ModelAdmin):
    """Admin for promotions."""

    form = PromotionAdminForm
    list_display = (
        "code",
        "name",
        "discount_display",
        "status_display",
        "usage_display",
        "starts_at",
        "expires_at",
    )
    list_filter = ("is_active", "discount_type", "first_order_only", "created_at")
    search_fields = ("code", "name", "description")
    readonly_fields = ("current_uses", "version", "created_at", "updated_at")
    date_hierarchy = "created_at"
    inlines = [PromotionUsageInline]

    fieldsets = (
        (None, {
            "fields": ("code", "name", "description", "is_active")
        }),
        ("Discount", {
            "fields": ("discount_type", "discount_value", "max_discount_amount")
        }),
        ("Eligibility", {
            "fields": ("min_order_amount", "applicable_category_ids", "first_order_only")
        }),
        ("Validity", {
            "fields": ("starts_at", "expires_at")
        }),
        ("Usage Limits", {
            "fields": ("max_uses", "max_uses_per_user", "current_uses")
        }),
        ("Metadata", {
            "fields": ("version", "created_at", "updated_at", "expected_version"),
            "classes": ("collapse",)
        }),
    )

    def discount_display(self, obj):
        if obj.discount_type == "percentage":
            return f"{obj.discount_value}%"
        return f"{obj.discount_value}"
    discount_display.short_description = "Discount"

    def status_display(self, obj):
        return obj.status_at(timezone.now()).label
    status_display.short_description = "Status"

    def usage_display(self, obj):
        if obj.max_uses:
            return f"{obj.current_uses}/{obj.max_uses}"
        return f"{obj.current_uses}/∞"
    usage_display.short_description = "Usage"

    def get_readonly_fields(self, request, obj=None):
        readonly = list(super().get_readonly_fields(request, obj))
        if obj is not None and obj.is_in_use:
            readonly.extend(IMMUTABLE_WHEN_IN_USE)
        return readonly

    def save_model(self, request, obj, form, change):
        if not change:
            super().save_model(request, obj, form, change)
            return
        result = PromotionAdminService(PromotionRepository()).update(
            obj.pk,
            form.promotion_changes(),
            expected_version=form.cleaned_data.get("expected_version"),
        )
        if result.is_err():
            request.promotion_save_error = result.unwrap_err().message
            return
        obj.refresh_from_db()

    def response_change(self, request, obj):
        error = getattr(request, "promotion_save_error", None)
        if error:
            self.message_user(request, error, messages.ERROR)
            return HttpResponseRedirect(request.path)
        return super().response_change(request, obj)

    def has_delete_permission(self, request, obj=None):
        # Soft delete only: deactivate instead
        return False


@admin.register(PromotionUsage)
class PromotionUsageAdmin(admin.ModelAdmin):
    """Admin for promotion usages (read-only)."""

    list_display = ("promotion", "user", "order", "discount_amount", "used_at")
    list_filter = ("used_at",)
    search_fields = ("promotion__code", "user__email", "order__order_number")
    readonly_fields = ("promotion", "user", "order", "discount_amount", "used_at", "version")
    date_hierarchy = "used_at"

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PromotionRemovalAudit)
class PromotionRemovalAuditAdmin(admin.ModelAdmin):
    """Admin for automatic promotion removals (read-only)."""

    list_display = ("code", "cart_id", "user", "reason", "discount_at_removal", "occurred_at")
    list_filter = ("reason", "occurred_at")
    search_fields = ("code", "cart_id", "user__email")
    readonly_fields = ("cart_id", "user", "code", "discount_at_removal", "reason", "metadata", "occurred_at")
    date_hierarchy = "occurred_at"

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
