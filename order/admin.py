from django.contrib import admin, messages
from django.utils.translation import gettext_lazy as _

from .models import LineItem, Order
from .services import LineItemStatusService


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "order_name", "created_at")
    search_fields = ("id", "order_name")
    actions = ("merge_duplicate_line_items",)

    def merge_duplicate_line_items(self, request, queryset):
        merged = 0
        for order in queryset:
            result = LineItemStatusService.merge_duplicates(order.pk, actor=request.user)
            if result.status_update.ok:
                merged += len(result.status_update.updated)
            else:
                self.message_user(
                    request,
                    _("Could not merge duplicates on %(order)s: %(failed)s") % {"order": order.pk, "failed": result.status_update.failed},
                    messages.ERROR,
                )
        self.message_user(request, _("%d duplicate line items deactivated.") % merged, messages.INFO)

    merge_duplicate_line_items.short_description = "Merge duplicate line items"


@admin.register(LineItem)
class LineItemAdmin(admin.ModelAdmin):
    list_display = ("line_item_id", "order", "product_id", "vendor_name", "price", "status", "fulfillment_status", "refund_status")
    list_filter = ("status", "fulfillment_status", "refund_status")
    search_fields = ("line_item_id", "order__id", "product_id", "vendor_name")
