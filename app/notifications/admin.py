from django.contrib import admin

from notifications.models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    """Support view of delivered escrow notifications. Nothing is editable."""

    list_display = ["id", "event_type", "recipient", "escrow_order", "is_read", "created_at"]
    list_filter = ["is_read", "event_type"]
    search_fields = ["idempotency_key", "recipient__username", "recipient__email"]
    date_hierarchy = "created_at"
    raw_id_fields = ["recipient"]

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    @admin.display(description="Order")
    def escrow_order(self, obj):
        return (obj.data or {}).get("order_id", "")
