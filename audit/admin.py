from django.contrib import admin

from .models import AuditEvent


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ("id", "action", "actor", "target_type", "target_id", "created_at")
    search_fields = ("target_id", "actor__email")
    list_filter = ("action", "target_type")
    readonly_fields = ("action", "actor", "target_type", "target_id", "before", "after", "created_at")

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
