import uuid
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class AuditEvent(models.Model):
    class Action(models.TextChoices):
        BATCH_CREATED = "batch_created", "Batch Created"
        BATCH_TRANSITIONED = "batch_transitioned", "Batch Transitioned"
        MARKED_PAID = "marked_paid", "Marked Paid"
        REFUND_APPLIED = "refund_applied", "Refund Applied"
        LINE_ITEM_STATUS_CHANGED = "line_item_status_changed", "Line Item Status Changed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    action = models.CharField(max_length=50, choices=Action.choices)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_events",
    )
    target_type = models.CharField(max_length=50)
    target_id = models.CharField(max_length=100)
    before = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    after = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["action"], name="audit_audit_action_7b1c2e_idx"),
            models.Index(fields=["target_type", "target_id"], name="audit_audit_target__4f0d9a_idx"),
            models.Index(fields=["created_at"], name="audit_audit_created_a91e35_idx"),
        ]

    def __str__(self):
        return f"{self.action} {self.target_type}:{self.target_id}"
