import logging

from django.shortcuts import get_object_or_404
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from account.permissions import IsPayoutAdmin, IsVendor
from order.models import LineItem
from .models import SettlementBatch
from .serializers import (
    ApplyRefundSerializer,
    BatchTransitionSerializer,
    CreateBatchSerializer,
    MarkMonthPaidSerializer,
    MarkPaidSerializer,
    PendingLineItemSerializer,
    PendingQuerySerializer,
    PayoutDeductionSerializer,
    RedeemSerializer,
    SettlementBatchSerializer,
)
from .services import (
    BatchCreationError,
    BatchOutcome,
    BatchStatusService,
    DateRange,
    PayoutError,
    PayoutStoreError,
    PayoutValidationError,
    PendingItemResolver,
    RefundDeductionHandler,
    SettlementBatchCreator,
    StatusConflictError,
)

logger = logging.getLogger(__name__)

_OUTCOME_STATUS = {
    BatchOutcome.CREATED: status.HTTP_201_CREATED,
    BatchOutcome.NOTHING_ELIGIBLE: status.HTTP_400_BAD_REQUEST,
    BatchOutcome.ALREADY_PAID: status.HTTP_409_CONFLICT,
}


def _error_response(exc: PayoutError) -> Response:
    if isinstance(exc, PayoutValidationError):
        return Response({"detail": str(exc), "errors": exc.errors}, status=status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, StatusConflictError):
        return Response({"detail": str(exc), "conflicts": exc.conflicts}, status=status.HTTP_409_CONFLICT)
    if isinstance(exc, PayoutStoreError):
        return Response({"detail": str(exc)}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
    if isinstance(exc, BatchCreationError):
        return Response({"detail": str(exc)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.error("Unhandled payout error: %s", exc)
    return Response({"detail": str(exc)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


def _resolution_payload(resolution):
    return {
        "vendor_name": resolution.vendor_name,
        "items": [
            {**PendingLineItemSerializer(entry.line_item).data, "amount": str(entry.settled_amount)}
            for entry in resolution.items
        ],
        "needs_pricing": PendingLineItemSerializer(resolution.needs_pricing, many=True).data,
        "total_amount": str(resolution.total_amount),
        "pending_deductions": str(resolution.pending_deductions),
        "already_paid_count": resolution.already_paid_count,
        "errors": resolution.errors,
        "warnings": resolution.warnings,
    }


def _batch_result_response(result) -> Response:
    payload = {
        "outcome": result.outcome.value,
        "reference": result.reference,
        "items_marked": result.items_marked,
        "line_item_ids": result.line_item_ids,
        "total_amount": str(result.total_amount),
        "deduction_amount": str(result.deduction_amount),
        "needs_pricing": result.needs_pricing,
        "already_paid": result.already_paid,
        "warnings": result.warnings,
        "batch": SettlementBatchSerializer(result.batch).data if result.batch is not None else None,
    }
    if result.outcome is BatchOutcome.NOTHING_ELIGIBLE:
        payload["detail"] = "No eligible line items to settle"
    elif result.outcome is BatchOutcome.ALREADY_PAID:
        payload["detail"] = "All candidate line items are already paid"
    return Response(payload, status=_OUTCOME_STATUS[result.outcome])


def _parse_range(data):
    if data.get("start") is None:
        return None
    return DateRange.from_dates(data["start"], data["end"])


class PendingPayoutView(APIView):
    permission_classes = [IsPayoutAdmin]

    def get(self, request):
        serializer = PendingQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            resolution = PendingItemResolver().find_eligible(data.get("vendor_name"), _parse_range(data))
        except PayoutError as exc:
            return _error_response(exc)
        return Response(_resolution_payload(resolution))


class VendorPendingPayoutView(APIView):
    permission_classes = [IsVendor]

    def get(self, request):
        serializer = PendingQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        try:
            resolution = PendingItemResolver().find_eligible(
                request.user.vendor_name, _parse_range(serializer.validated_data)
            )
        except PayoutError as exc:
            return _error_response(exc)
        return Response(_resolution_payload(resolution))


class RedeemPayoutView(APIView):
    """A vendor redeems everything currently pending into one requested batch."""
    permission_classes = [IsVendor]

    def post(self, request):
        serializer = RedeemSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = SettlementBatchCreator().create_batch(
                request.user.vendor_name,
                requested_by=request.user,
                notes=serializer.validated_data.get("notes", ""),
            )
        except PayoutError as exc:
            return _error_response(exc)
        return _batch_result_response(result)


class AdminCreateBatchView(APIView):
    permission_classes = [IsPayoutAdmin]

    def post(self, request):
        serializer = CreateBatchSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            result = SettlementBatchCreator().create_batch(
                data["vendor_name"],
                requested_by=request.user,
                reference=data.get("reference"),
                notes=data.get("notes", ""),
            )
        except PayoutError as exc:
            return _error_response(exc)
        return _batch_result_response(result)


class BatchTransitionView(APIView):
    permission_classes = [IsPayoutAdmin]

    def post(self, request, pk):
        batch = get_object_or_404(SettlementBatch, pk=pk)
        serializer = BatchTransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            batch = BatchStatusService.transition(
                batch.pk,
                serializer.validated_data["status"],
                actor=request.user,
                notes=serializer.validated_data.get("notes", ""),
            )
        except PayoutError as exc:
            return _error_response(exc)
        return Response(SettlementBatchSerializer(batch).data)


class BatchListView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        qs = SettlementBatch.objects.prefetch_related("items")
        if request.user.is_payout_admin:
            vendor_name = request.query_params.get("vendor_name")
            if vendor_name:
                qs = qs.filter(vendor_name=vendor_name)
        elif request.user.vendor_name:
            qs = qs.filter(vendor_name=request.user.vendor_name)
        else:
            qs = qs.none()
        batch_status = request.query_params.get("status")
        if batch_status:
            qs = qs.filter(status=batch_status)
        return Response(SettlementBatchSerializer(qs, many=True).data)


class MarkMonthPaidView(APIView):
    permission_classes = [IsPayoutAdmin]

    def post(self, request):
        serializer = MarkMonthPaidSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            result = SettlementBatchCreator().mark_month_paid(
                data["vendor_name"],
                data["year"],
                data["month"],
                reference=data.get("reference"),
                create_batch_record=data["create_batch_record"],
                marked_by=request.user,
            )
        except PayoutError as exc:
            return _error_response(exc)
        return _batch_result_response(result)


class MarkPaidView(APIView):
    permission_classes = [IsPayoutAdmin]

    def post(self, request):
        serializer = MarkPaidSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            result = SettlementBatchCreator().mark_paid(
                data.get("line_item_ids"),
                order_ids=data.get("order_ids"),
                vendor_name=data.get("vendor_name"),
                reference=data.get("reference"),
                create_batch_record=data["create_batch_record"],
                skip_validation=data["skip_validation"],
                marked_by=request.user,
            )
        except PayoutError as exc:
            return _error_response(exc)
        return _batch_result_response(result)


class ApplyRefundView(APIView):
    permission_classes = [IsPayoutAdmin]

    def post(self, request):
        serializer = ApplyRefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        get_object_or_404(LineItem, pk=data["line_item_id"])
        try:
            result = RefundDeductionHandler().apply_refund(
                data["line_item_id"],
                data["refund_type"],
                data.get("refunded_amount"),
                actor=request.user,
            )
        except PayoutError as exc:
            return _error_response(exc)
        return Response(
            {
                "line_item_id": result.line_item_id,
                "previous_status": result.previous_status,
                "new_status": result.new_status,
                "refunded_amount": str(result.refunded_amount),
                "earned_amount": str(result.earned_amount) if result.earned_amount is not None else None,
                "already_applied": result.already_applied,
                "deduction": PayoutDeductionSerializer(result.deduction).data if result.deduction else None,
            }
        )


class VendorSummaryView(APIView):
    permission_classes = [IsPayoutAdmin]

    def get(self, request, vendor_name):
        include_paid = request.query_params.get("include_paid", "").lower() in {"1", "true", "yes"}
        try:
            summary = PendingItemResolver().summarize_vendor(vendor_name, include_paid=include_paid)
        except PayoutError as exc:
            return _error_response(exc)
        return Response(
            {
                "vendor_name": summary.vendor_name,
                "pending_amount": str(summary.pending_amount),
                "paid_amount": str(summary.paid_amount),
                "orders": [
                    {
                        "order_id": order.order_id,
                        "order_name": order.order_name,
                        "total_line_items": order.total_line_items,
                        "fulfilled_line_items": order.fulfilled_line_items,
                        "paid_line_items": order.paid_line_items,
                        "pending_line_items": order.pending_line_items,
                        "unpriced_line_items": order.unpriced_line_items,
                        "order_total": str(order.order_total),
                        "payout_amount": str(order.payout_amount),
                    }
                    for order in summary.orders
                ],
            }
        )
