from rest_framework import serializers

from order.models import LineItem
from .models import BatchItem, PayoutDeduction, PayoutRule, SettlementBatch


class PayoutRuleSerializer(serializers.ModelSerializer):
    class Meta:
        model = PayoutRule
        fields = ["id", "product_id", "vendor_name", "payout_amount", "is_percentage", "created_at", "updated_at"]


class BatchItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = BatchItem
        fields = [
            "id",
            "line_item",
            "order_id",
            "product_id",
            "amount",
            "manually_marked_paid",
            "marked_by",
            "marked_at",
            "payout_reference",
            "created_at",
        ]


class SettlementBatchSerializer(serializers.ModelSerializer):
    items = BatchItemSerializer(many=True, read_only=True)

    class Meta:
        model = SettlementBatch
        fields = [
            "id",
            "vendor_name",
            "total_amount",
            "deduction_amount",
            "net_amount",
            "currency",
            "status",
            "source",
            "reference",
            "notes",
            "processed_by",
            "processed_at",
            "created_at",
            "updated_at",
            "items",
        ]


class PayoutDeductionSerializer(serializers.ModelSerializer):
    class Meta:
        model = PayoutDeduction
        fields = ["id", "vendor_name", "line_item", "refund_type", "amount", "status", "applied_batch", "applied_at", "created_at"]


class PendingLineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = LineItem
        fields = ["line_item_id", "order", "product_id", "product_title", "price", "refunded_amount", "fulfilled_at"]


class PendingQuerySerializer(serializers.Serializer):
    vendor_name = serializers.CharField(required=False, allow_blank=False)
    start = serializers.DateField(required=False)
    end = serializers.DateField(required=False)

    def validate(self, attrs):
        start, end = attrs.get("start"), attrs.get("end")
        if (start is None) != (end is None):
            raise serializers.ValidationError("start and end must be given together")
        if start and start > end:
            raise serializers.ValidationError("start must not be after end")
        return attrs


class CreateBatchSerializer(serializers.Serializer):
    vendor_name = serializers.CharField()
    reference = serializers.CharField(required=False, allow_blank=False, max_length=150)
    notes = serializers.CharField(required=False, allow_blank=True)


class RedeemSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True)


class BatchTransitionSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=SettlementBatch.Status.choices)
    notes = serializers.CharField(required=False, allow_blank=True)


class MarkMonthPaidSerializer(serializers.Serializer):
    vendor_name = serializers.CharField()
    year = serializers.IntegerField(min_value=2000, max_value=9998)
    month = serializers.IntegerField(min_value=1, max_value=12)
    reference = serializers.CharField(required=False, allow_blank=False, max_length=150)
    create_batch_record = serializers.BooleanField(default=False)


class MarkPaidSerializer(serializers.Serializer):
    line_item_ids = serializers.ListField(child=serializers.CharField(), required=False)
    order_ids = serializers.ListField(child=serializers.CharField(), required=False)
    vendor_name = serializers.CharField(required=False)
    reference = serializers.CharField(required=False, allow_blank=False, max_length=150)
    create_batch_record = serializers.BooleanField(default=False)
    skip_validation = serializers.BooleanField(default=False)

    def validate(self, attrs):
        if not attrs.get("line_item_ids") and not attrs.get("order_ids"):
            raise serializers.ValidationError("Provide line_item_ids or order_ids")
        if attrs.get("order_ids") and not attrs.get("vendor_name"):
            raise serializers.ValidationError({"vendor_name": "Required when order_ids is given"})
        return attrs


class ApplyRefundSerializer(serializers.Serializer):
    line_item_id = serializers.CharField()
    refund_type = serializers.ChoiceField(choices=LineItem.RefundStatus.choices)
    refunded_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)

    def validate(self, attrs):
        refund_type = attrs["refund_type"]
        if refund_type == LineItem.RefundStatus.NONE:
            raise serializers.ValidationError({"refund_type": "Use 'partial' or 'full'"})
        if refund_type == LineItem.RefundStatus.PARTIAL and attrs.get("refunded_amount") is None:
            raise serializers.ValidationError({"refunded_amount": "Required for a partial refund"})
        return attrs
