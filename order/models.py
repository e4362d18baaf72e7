from decimal import Decimal

from django.db import models


class Order(models.Model):
    # External order id as issued by the storefront
    id = models.CharField(primary_key=True, max_length=64)
    order_name = models.CharField(max_length=64, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.order_name or self.id


class LineItem(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active"
        INACTIVE = "inactive"
        REMOVED = "removed"

    class FulfillmentStatus(models.TextChoices):
        UNFULFILLED = "unfulfilled"
        PARTIAL = "partial"
        FULFILLED = "fulfilled"

    class RefundStatus(models.TextChoices):
        NONE = "none"
        PARTIAL = "partial"
        FULL = "full"

    line_item_id = models.CharField(primary_key=True, max_length=64)
    order = models.ForeignKey(Order, related_name="line_items", on_delete=models.PROTECT)

    # Snapshot fields
    product_id = models.CharField(max_length=64)
    product_title = models.CharField(max_length=255, blank=True)
    vendor_name = models.CharField(max_length=255, db_index=True)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField(default=1)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    status_reason = models.CharField(max_length=255, blank=True)
    fulfillment_status = models.CharField(
        max_length=20,
        choices=FulfillmentStatus.choices,
        default=FulfillmentStatus.UNFULFILLED,
    )
    fulfilled_at = models.DateTimeField(null=True, blank=True)
    refund_status = models.CharField(max_length=20, choices=RefundStatus.choices, default=RefundStatus.NONE)
    refunded_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "line_item_id"]
        indexes = [
            models.Index(fields=["vendor_name", "status", "fulfillment_status", "refund_status"], name="order_line_payout_elig_idx"),
            models.Index(fields=["order", "product_id"], name="order_line_order_prod_idx"),
            models.Index(fields=["fulfilled_at"], name="order_line_fulfilled_idx"),
        ]

    def __str__(self):
        return f"{self.line_item_id} ({self.product_id})"

    def is_payout_eligible(self, include_partial_refunds: bool = False) -> bool:
        refund_ok = self.refund_status == self.RefundStatus.NONE or (
            include_partial_refunds and self.refund_status == self.RefundStatus.PARTIAL
        )
        return (
            self.status == self.Status.ACTIVE
            and self.fulfillment_status == self.FulfillmentStatus.FULFILLED
            and refund_ok
        )

    @property
    def payable_price(self) -> Decimal:
        """Unit price left after any partial refund."""
        if self.refund_status == self.RefundStatus.PARTIAL and self.refunded_amount is not None:
            return self.price - self.refunded_amount
        return self.price
