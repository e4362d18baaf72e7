

from rest_framework import serializers

from .models import LineItem


class LineItemIngestSerializer(serializers.Serializer):
    line_item_id = serializers.CharField(max_length=64)
    product_id = serializers.CharField(max_length=64)
    product_title = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    vendor_name = serializers.CharField(max_length=255)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    quantity = serializers.IntegerField(min_value=1, default=1)
    fulfillment_status = serializers.ChoiceField(
        choices=LineItem.FulfillmentStatus.choices,
        default=LineItem.FulfillmentStatus.UNFULFILLED,
    )
    fulfilled_at = serializers.DateTimeField(required=False, allow_null=True, default=None)


class OrderIngestSerializer(serializers.Serializer):
    order_id = serializers.CharField(max_length=64)
    order_name = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    line_items = LineItemIngestSerializer(many=True)

    def validate_line_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one line item is required")
        ids = [item["line_item_id"] for item in value]
        if len(ids) != len(set(ids)):
            raise serializers.ValidationError("line_item_id values must be unique")
        return value


class SetStatusSerializer(serializers.Serializer):
    ids = serializers.ListField(child=serializers.CharField(max_length=64), allow_empty=False)
    status = serializers.ChoiceField(choices=LineItem.Status.choices)
    expected_status = serializers.ChoiceField(choices=LineItem.Status.choices, required=False, allow_null=True, default=None)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class FulfillmentUpdateSerializer(serializers.Serializer):
    fulfillment_status = serializers.ChoiceField(choices=LineItem.FulfillmentStatus.choices)
    fulfilled_at = serializers.DateTimeField(required=False, allow_null=True, default=None)


class LineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = LineItem
        fields = [
            "line_item_id",
            "order",
            "product_id",
            "product_title",
            "vendor_name",
            "price",
            "quantity",
            "status",
            "status_reason",
            "fulfillment_status",
            "fulfilled_at",
            "refund_status",
            "refunded_amount",
            "created_at",
            "updated_at",
        ]
