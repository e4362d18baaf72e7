from decimal import Decimal
from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("order", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PayoutRule",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("product_id", models.CharField(max_length=64)),
                ("vendor_name", models.CharField(max_length=255)),
                ("payout_amount", models.DecimalField(decimal_places=2, help_text="Percent of the price when is_percentage, otherwise a flat amount", max_digits=12)),
                ("is_percentage", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"unique_together": {("product_id", "vendor_name")}},
        ),
        migrations.CreateModel(
            name="SettlementBatch",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("vendor_name", models.CharField(db_index=True, max_length=255)),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("deduction_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("net_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="USD", max_length=10)),
                ("status", models.CharField(choices=[("requested", "Requested"), ("processing", "Processing"), ("completed", "Completed"), ("rejected", "Rejected"), ("failed", "Failed")], default="requested", max_length=20)),
                ("source", models.CharField(choices=[("redemption", "Redemption"), ("manual", "Manual")], default="redemption", max_length=20)),
                ("reference", models.CharField(max_length=150, unique=True)),
                ("notes", models.TextField(blank=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("processed_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="processed_batches", to=settings.AUTH_USER_MODEL)),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.AddIndex(
            model_name="settlementbatch",
            index=models.Index(fields=["status"], name="payout_batch_status_idx"),
        ),
        migrations.AddIndex(
            model_name="settlementbatch",
            index=models.Index(fields=["vendor_name", "created_at"], name="payout_batch_vendor_idx"),
        ),
        migrations.CreateModel(
            name="BatchItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("order_id", models.CharField(max_length=64)),
                ("product_id", models.CharField(max_length=64)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("claim_token", models.UUIDField(db_index=True)),
                ("manually_marked_paid", models.BooleanField(default=False)),
                ("marked_at", models.DateTimeField(blank=True, null=True)),
                ("payout_reference", models.CharField(blank=True, max_length=150, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("batch", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name="items", to="payout.settlementbatch")),
                ("line_item", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="batch_items", to="order.lineitem")),
                ("marked_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="marked_batch_items", to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.AddConstraint(
            model_name="batchitem",
            constraint=models.UniqueConstraint(fields=("batch", "line_item"), name="payout_batch_line_item_uniq"),
        ),
        migrations.AddConstraint(
            model_name="batchitem",
            constraint=models.UniqueConstraint(fields=("line_item",), name="payout_line_item_paid_once"),
        ),
        migrations.CreateModel(
            name="PayoutDeduction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("vendor_name", models.CharField(db_index=True, max_length=255)),
                ("refund_type", models.CharField(choices=[("partial", "Partial"), ("full", "Full")], max_length=20)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("applied", "Applied")], default="pending", max_length=20)),
                ("applied_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("applied_batch", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="applied_deductions", to="payout.settlementbatch")),
                ("line_item", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="payout_deductions", to="order.lineitem")),
            ],
            options={"ordering": ["created_at"]},
        ),
        migrations.AddConstraint(
            model_name="payoutdeduction",
            constraint=models.UniqueConstraint(fields=("line_item", "refund_type"), name="payout_deduction_once_per_refund"),
        ),
        migrations.AddIndex(
            model_name="payoutdeduction",
            index=models.Index(fields=["vendor_name", "status"], name="payout_deduction_pending_idx"),
        ),
    ]
