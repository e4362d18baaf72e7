from django.contrib import admin, messages
from django.utils.translation import gettext_lazy as _

from .models import BatchItem, PayoutDeduction, PayoutRule, SettlementBatch
from .services import BatchStatusService, PayoutError


@admin.register(PayoutRule)
class PayoutRuleAdmin(admin.ModelAdmin):
    list_display = ("product_id", "vendor_name", "payout_amount", "is_percentage", "updated_at")
    list_filter = ("is_percentage",)
    search_fields = ("product_id", "vendor_name")


class BatchItemInline(admin.TabularInline):
    model = BatchItem
    extra = 0
    can_delete = False
    fields = ("line_item", "order_id", "product_id", "amount", "manually_marked_paid", "payout_reference")
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(SettlementBatch)
class SettlementBatchAdmin(admin.ModelAdmin):
    list_display = ("reference", "vendor_name", "total_amount", "deduction_amount", "net_amount", "status", "source", "created_at")
    list_filter = ("status", "source")
    search_fields = ("reference", "vendor_name")
    readonly_fields = (
        "vendor_name",
        "total_amount",
        "deduction_amount",
        "net_amount",
        "currency",
        "status",
        "source",
        "reference",
        "processed_by",
        "processed_at",
        "created_at",
        "updated_at",
    )
    inlines = (BatchItemInline,)
    actions = ("start_processing", "complete_batches", "reject_batches", "fail_batches")

    def has_delete_permission(self, request, obj=None):
        return False

    def _transition(self, request, queryset, target):
        moved = 0
        for batch in queryset:
            try:
                BatchStatusService.transition(batch.pk, target, actor=request.user)
                moved += 1
            except PayoutError as exc:
                self.message_user(
                    request,
                    _("Batch %(ref)s not updated: %(err)s") % {"ref": batch.reference, "err": str(exc)},
                    messages.ERROR,
                )
        self.message_user(request, _("%(count)d batches marked as %(status)s.") % {"count": moved, "status": target}, messages.INFO)

    def start_processing(self, request, queryset):
        self._transition(request, queryset, SettlementBatch.Status.PROCESSING)

    start_processing.short_description = "Start processing selected batches"

    def complete_batches(self, request, queryset):
        self._transition(request, queryset, SettlementBatch.Status.COMPLETED)

    complete_batches.short_description = "Mark selected batches as completed"

    def reject_batches(self, request, queryset):
        self._transition(request, queryset, SettlementBatch.Status.REJECTED)

    reject_batches.short_description = "Reject selected batches"

    def fail_batches(self, request, queryset):
        self._transition(request, queryset, SettlementBatch.Status.FAILED)

    fail_batches.short_description = "Mark selected batches as failed"


@admin.register(PayoutDeduction)
class PayoutDeductionAdmin(admin.ModelAdmin):
    list_display = ("vendor_name", "line_item", "refund_type", "amount", "status", "applied_batch", "created_at")
    list_filter = ("status", "refund_type")
    search_fields = ("vendor_name", "line_item__line_item_id")
    readonly_fields = ("vendor_name", "line_item", "refund_type", "amount", "status", "applied_batch", "applied_at", "created_at")
