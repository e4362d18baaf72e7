from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from account.permissions import IsPayoutAdmin
from .models import LineItem, Order
from .serializers import (
    FulfillmentUpdateSerializer,
    LineItemSerializer,
    OrderIngestSerializer,
    SetStatusSerializer,
)
from .services import DuplicateLineItemDetector, LineItemStatusService, OrderIngestService


def _status_update_payload(result):
    return {"updated": result.updated, "failed": result.failed}


class OrderIngestView(APIView):
    permission_classes = [IsPayoutAdmin]

    def post(self, request):
        serializer = OrderIngestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        counts = OrderIngestService.ingest(
            order_id=data["order_id"],
            order_name=data["order_name"],
            items=data["line_items"],
        )
        return Response({"order_id": data["order_id"], **counts}, status=status.HTTP_201_CREATED)


class OrderDuplicatesView(APIView):
    permission_classes = [IsPayoutAdmin]

    def get(self, request, order_id):
        order = get_object_or_404(Order, pk=order_id)
        groups = DuplicateLineItemDetector.detect(order.pk)
        return Response(
            {
                "order_id": order.pk,
                "duplicates": {item_id: sorted(others) for item_id, others in groups.items()},
            }
        )


class MergeDuplicatesView(APIView):
    permission_classes = [IsPayoutAdmin]

    def post(self, request, order_id):
        order = get_object_or_404(Order, pk=order_id)
        reason = (request.data.get("reason") or "duplicate line item").strip()
        result = LineItemStatusService.merge_duplicates(order.pk, actor=request.user, reason=reason)
        payload = {"kept": result.kept, **_status_update_payload(result.status_update)}
        if not result.status_update.ok:
            return Response(payload, status=status.HTTP_409_CONFLICT)
        return Response(payload)


class LineItemStatusView(APIView):
    """Bulk status change for a flagged duplicate group; all ids change or none do."""
    permission_classes = [IsPayoutAdmin]

    def post(self, request):
        serializer = SetStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            result = LineItemStatusService.set_status(
                data["ids"],
                data["status"],
                actor=request.user,
                reason=data["reason"],
                expected_status=data["expected_status"],
            )
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        if not result.ok:
            return Response(_status_update_payload(result), status=status.HTTP_409_CONFLICT)
        return Response(_status_update_payload(result))


class LineItemFulfillmentView(APIView):
    permission_classes = [IsPayoutAdmin]

    def post(self, request, line_item_id):
        get_object_or_404(LineItem, pk=line_item_id)
        serializer = FulfillmentUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            item = OrderIngestService.record_fulfillment(line_item_id, **serializer.validated_data)
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(LineItemSerializer(item).data)
