# payout/models.py

import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models

from order.models import LineItem


class PayoutRule(models.Model):
    """Payout policy for one (product, vendor) pair. No row means the payout is undetermined."""

    product_id = models.CharField(max_length=64)
    vendor_name = models.CharField(max_length=255)

    payout_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Percent of the price when is_percentage, otherwise a flat amount",
    )
    is_percentage = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("product_id", "vendor_name")

    def __str__(self):
        unit = "%" if self.is_percentage else " flat"
        return f"{self.vendor_name}/{self.product_id}: {self.payout_amount}{unit}"


class SettlementBatch(models.Model):

    class Status(models.TextChoices):
        REQUESTED = "requested", "Requested"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        REJECTED = "rejected", "Rejected"
        FAILED = "failed", "Failed"

    class Source(models.TextChoices):
        REDEMPTION = "redemption", "Redemption"
        MANUAL = "manual", "Manual"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    vendor_name = models.CharField(max_length=255, db_index=True)

    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    deduction_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    net_amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=10, default="USD")

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.REQUESTED)
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.REDEMPTION)
    reference = models.CharField(max_length=150, unique=True)
    notes = models.TextField(blank=True)

    processed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="processed_batches",
    )
    processed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="payout_batch_status_idx"),
            models.Index(fields=["vendor_name", "created_at"], name="payout_batch_vendor_idx"),
        ]

    def __str__(self):
        return f"{self.reference} - {self.status}"

    @property
    def is_terminal(self) -> bool:
        return self.status in {self.Status.COMPLETED, self.Status.REJECTED, self.Status.FAILED}


class BatchItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Null when an admin marked the item paid without creating a batch record.
    batch = models.ForeignKey(
        SettlementBatch,
        on_delete=models.CASCADE,
        related_name="items",
        null=True,
        blank=True,
    )
    line_item = models.ForeignKey(LineItem, on_delete=models.PROTECT, related_name="batch_items")

    # Snapshot fields
    order_id = models.CharField(max_length=64)
    product_id = models.CharField(max_length=64)
    amount = models.DecimalField(max_digits=12, decimal_places=2)

    # Identifies the rows written by one settlement call
    claim_token = models.UUIDField(db_index=True)

    manually_marked_paid = models.BooleanField(default=False)
    marked_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="marked_batch_items",
    )
    marked_at = models.DateTimeField(null=True, blank=True)
    payout_reference = models.CharField(max_length=150, blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["batch", "line_item"], name="payout_batch_line_item_uniq"),
            models.UniqueConstraint(fields=["line_item"], name="payout_line_item_paid_once"),
        ]

    def __str__(self):
        return f"{self.line_item_id} -> {self.batch_id or 'manual'} ({self.amount})"


class PayoutDeduction(models.Model):
    """Refund offset withheld from the vendor's next settlement."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPLIED = "applied", "Applied"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    vendor_name = models.CharField(max_length=255, db_index=True)
    line_item = models.ForeignKey(LineItem, on_delete=models.PROTECT, related_name="payout_deductions")
    refund_type = models.CharField(max_length=20, choices=[("partial", "Partial"), ("full", "Full")])
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)

    applied_batch = models.ForeignKey(
        SettlementBatch,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="applied_deductions",
    )
    applied_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(fields=["line_item", "refund_type"], name="payout_deduction_once_per_refund"),
        ]
        indexes = [
            models.Index(fields=["vendor_name", "status"], name="payout_deduction_pending_idx"),
        ]

    def __str__(self):
        return f"{self.vendor_name} -{self.amount} ({self.status})"
