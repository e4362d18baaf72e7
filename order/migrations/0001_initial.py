from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.CharField(max_length=64, primary_key=True, serialize=False)),
                ("order_name", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="LineItem",
            fields=[
                ("line_item_id", models.CharField(max_length=64, primary_key=True, serialize=False)),
                ("product_id", models.CharField(max_length=64)),
                ("product_title", models.CharField(blank=True, max_length=255)),
                ("vendor_name", models.CharField(db_index=True, max_length=255)),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("status", models.CharField(choices=[("active", "Active"), ("inactive", "Inactive"), ("removed", "Removed")], default="active", max_length=20)),
                ("status_reason", models.CharField(blank=True, max_length=255)),
                ("fulfillment_status", models.CharField(choices=[("unfulfilled", "Unfulfilled"), ("partial", "Partial"), ("fulfilled", "Fulfilled")], default="unfulfilled", max_length=20)),
                ("fulfilled_at", models.DateTimeField(blank=True, null=True)),
                ("refund_status", models.CharField(choices=[("none", "None"), ("partial", "Partial"), ("full", "Full")], default="none", max_length=20)),
                ("refunded_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="line_items", to="order.order")),
            ],
            options={"ordering": ["created_at", "line_item_id"]},
        ),
        migrations.AddIndex(
            model_name="lineitem",
            index=models.Index(fields=["vendor_name", "status", "fulfillment_status", "refund_status"], name="order_line_payout_elig_idx"),
        ),
        migrations.AddIndex(
            model_name="lineitem",
            index=models.Index(fields=["order", "product_id"], name="order_line_order_prod_idx"),
        ),
        migrations.AddIndex(
            model_name="lineitem",
            index=models.Index(fields=["fulfilled_at"], name="order_line_fulfilled_idx"),
        ),
    ]
