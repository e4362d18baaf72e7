from decimal import Decimal
from itertools import permutations
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from account.models import User
from audit.models import AuditEvent
from order.models import LineItem, Order
from order.services import DuplicateLineItemDetector, LineItemStatusService, OrderIngestService


def make_item(order, line_item_id, product_id, **extra):
    defaults = {
        "vendor_name": "Acme Prints",
        "price": Decimal("100.00"),
        "fulfillment_status": LineItem.FulfillmentStatus.FULFILLED,
        "fulfilled_at": timezone.now(),
    }
    defaults.update(extra)
    return LineItem.objects.create(order=order, line_item_id=line_item_id, product_id=product_id, **defaults)


class DuplicateLineItemDetectorTests(TestCase):
    def test_group_links_every_member_of_a_cluster(self):
        items = [
            LineItem(line_item_id="a", product_id="p1"),
            LineItem(line_item_id="b", product_id="p2"),
            LineItem(line_item_id="c", product_id="p1"),
            LineItem(line_item_id="d", product_id="p1"),
            LineItem(line_item_id="e", product_id="p3"),
        ]

        groups = DuplicateLineItemDetector.group(items)

        self.assertEqual(
            groups,
            {"a": {"c", "d"}, "c": {"a", "d"}, "d": {"a", "c"}},
        )

    def test_group_is_transitive_in_any_arrival_order(self):
        base = [
            LineItem(line_item_id="x", product_id="p1"),
            LineItem(line_item_id="y", product_id="p1"),
            LineItem(line_item_id="z", product_id="p1"),
            LineItem(line_item_id="w", product_id="p2"),
        ]
        for ordering in permutations(base):
            groups = DuplicateLineItemDetector.group(ordering)
            self.assertEqual(set(groups), {"x", "y", "z"})
            for member, others in groups.items():
                self.assertEqual(others | {member}, {"x", "y", "z"})
                self.assertNotIn(member, others)

    def test_inactive_and_removed_items_do_not_join_groups(self):
        items = [
            LineItem(line_item_id="a", product_id="p1"),
            LineItem(line_item_id="b", product_id="p1", status=LineItem.Status.INACTIVE),
            LineItem(line_item_id="c", product_id="p2"),
            LineItem(line_item_id="d", product_id="p2", status=LineItem.Status.REMOVED),
            LineItem(line_item_id="e", product_id="p2"),
        ]

        groups = DuplicateLineItemDetector.group(items)

        self.assertEqual(groups, {"c": {"e"}, "e": {"c"}})

    def test_detect_reads_order_line_items(self):
        order = Order.objects.create(id="1001", order_name="#1001")
        make_item(order, "li-1", "p1")
        make_item(order, "li-2", "p1")
        make_item(order, "li-3", "p2")
        other = Order.objects.create(id="1002")
        make_item(other, "li-4", "p1")

        groups = DuplicateLineItemDetector.detect("1001")

        self.assertEqual(groups, {"li-1": {"li-2"}, "li-2": {"li-1"}})


class LineItemStatusServiceTests(TestCase):
    def setUp(self):
        self.admin = User.objects.create_user(email="admin@example.com", password="Pass123!", role="ADMIN", is_staff=True)
        self.order = Order.objects.create(id="2001", order_name="#2001")
        self.first = make_item(self.order, "li-1", "p1")
        self.second = make_item(self.order, "li-2", "p1")
        self.third = make_item(self.order, "li-3", "p1")

    def test_set_status_updates_whole_group(self):
        result = LineItemStatusService.set_status(
            ["li-2", "li-3"], LineItem.Status.INACTIVE, actor=self.admin, reason="duplicate"
        )

        self.assertTrue(result.ok)
        self.assertEqual(result.updated, ["li-2", "li-3"])
        self.assertEqual(
            set(LineItem.objects.filter(status=LineItem.Status.INACTIVE).values_list("pk", flat=True)),
            {"li-2", "li-3"},
        )
        self.second.refresh_from_db()
        self.assertEqual(self.second.status_reason, "duplicate")
        self.assertEqual(
            AuditEvent.objects.filter(action=AuditEvent.Action.LINE_ITEM_STATUS_CHANGED).count(), 2
        )

    def test_unknown_id_fails_the_group(self):
        result = LineItemStatusService.set_status(["li-2", "missing"], LineItem.Status.INACTIVE)

        self.assertFalse(result.ok)
        self.assertEqual(result.updated, [])
        self.assertEqual(result.failed, {"missing": "not found"})
        self.second.refresh_from_db()
        self.assertEqual(self.second.status, LineItem.Status.ACTIVE)

    def test_expected_status_mismatch_reports_conflicting_ids(self):
        LineItem.objects.filter(pk="li-3").update(status=LineItem.Status.REMOVED)

        result = LineItemStatusService.set_status(
            ["li-2", "li-3"],
            LineItem.Status.INACTIVE,
            expected_status=LineItem.Status.ACTIVE,
        )

        self.assertFalse(result.ok)
        self.assertEqual(list(result.failed), ["li-3"])
        self.second.refresh_from_db()
        self.assertEqual(self.second.status, LineItem.Status.ACTIVE)

    def test_write_failure_mid_group_rolls_back_earlier_rows(self):
        real_save = LineItem.save
        calls = []

        def flaky_save(instance, *args, **kwargs):
            calls.append(instance.pk)
            if len(calls) == 2:
                raise DatabaseError("disk I/O error")
            return real_save(instance, *args, **kwargs)

        with patch.object(LineItem, "save", autospec=True, side_effect=flaky_save):
            result = LineItemStatusService.set_status(
                ["li-1", "li-2", "li-3"], LineItem.Status.REMOVED, actor=self.admin
            )

        self.assertFalse(result.ok)
        self.assertEqual(list(result.failed), ["li-2"])
        self.assertEqual(
            LineItem.objects.filter(status=LineItem.Status.ACTIVE).count(), 3
        )
        self.assertFalse(AuditEvent.objects.exists())

    def test_invalid_status_is_rejected(self):
        with self.assertRaises(ValueError):
            LineItemStatusService.set_status(["li-1"], "archived")

    def test_removed_item_can_be_reactivated(self):
        LineItem.objects.filter(pk="li-3").update(status=LineItem.Status.REMOVED)

        result = LineItemStatusService.set_status(["li-3"], LineItem.Status.ACTIVE)

        self.assertTrue(result.ok)
        self.third.refresh_from_db()
        self.assertEqual(self.third.status, LineItem.Status.ACTIVE)

    def test_merge_duplicates_keeps_earliest_item(self):
        make_item(self.order, "li-4", "p2")

        result = LineItemStatusService.merge_duplicates("2001", actor=self.admin)

        self.assertEqual(result.kept, ["li-1"])
        self.assertEqual(result.status_update.updated, ["li-2", "li-3"])
        self.assertEqual(
            dict(LineItem.objects.values_list("pk", "status")),
            {
                "li-1": LineItem.Status.ACTIVE,
                "li-2": LineItem.Status.INACTIVE,
                "li-3": LineItem.Status.INACTIVE,
                "li-4": LineItem.Status.ACTIVE,
            },
        )
        self.assertEqual(DuplicateLineItemDetector.detect("2001"), {})


class OrderIngestServiceTests(TestCase):
    def _items(self):
        return [
            {
                "line_item_id": "li-1",
                "product_id": "p1",
                "product_title": "Poster",
                "vendor_name": "Acme Prints",
                "price": Decimal("25.00"),
                "quantity": 1,
                "fulfillment_status": LineItem.FulfillmentStatus.FULFILLED,
                "fulfilled_at": None,
            },
            {
                "line_item_id": "li-2",
                "product_id": "p2",
                "product_title": "Mug",
                "vendor_name": "Acme Prints",
                "price": Decimal("12.50"),
                "quantity": 1,
                "fulfillment_status": LineItem.FulfillmentStatus.UNFULFILLED,
                "fulfilled_at": None,
            },
        ]

    def test_ingest_is_idempotent_and_keeps_lifecycle_flags(self):
        first = OrderIngestService.ingest("3001", "#3001", self._items())
        LineItem.objects.filter(pk="li-1").update(status=LineItem.Status.INACTIVE)

        second = OrderIngestService.ingest("3001", "#3001", self._items())

        self.assertEqual(first, {"created": 2, "skipped": 0})
        self.assertEqual(second, {"created": 0, "skipped": 2})
        self.assertEqual(LineItem.objects.get(pk="li-1").status, LineItem.Status.INACTIVE)
        self.assertIsNotNone(LineItem.objects.get(pk="li-1").fulfilled_at)
        self.assertIsNone(LineItem.objects.get(pk="li-2").fulfilled_at)

    def test_fulfillment_moves_forward_only(self):
        OrderIngestService.ingest("3001", "#3001", self._items())

        item = OrderIngestService.record_fulfillment("li-2", LineItem.FulfillmentStatus.FULFILLED)
        self.assertEqual(item.fulfillment_status, LineItem.FulfillmentStatus.FULFILLED)
        self.assertIsNotNone(item.fulfilled_at)

        with self.assertRaises(ValueError):
            OrderIngestService.record_fulfillment("li-2", LineItem.FulfillmentStatus.PARTIAL)


class OrderAdminViewsTests(APITestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(email="admin@example.com", password="Pass123!", role="ADMIN", is_staff=True)
        self.vendor = User.objects.create_user(email="vendor@example.com", password="Pass123!", vendor_name="Acme Prints")
        self.order = Order.objects.create(id="4001", order_name="#4001")
        make_item(self.order, "li-1", "p1")
        make_item(self.order, "li-2", "p1")
        make_item(self.order, "li-3", "p1")

    def test_duplicates_endpoint_lists_groups(self):
        self.client.force_authenticate(self.admin)

        response = self.client.get("/order/admin/orders/4001/duplicates/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["duplicates"]["li-1"], ["li-2", "li-3"])
        self.assertEqual(response.data["duplicates"]["li-3"], ["li-1", "li-2"])

    def test_vendor_cannot_use_admin_endpoints(self):
        self.client.force_authenticate(self.vendor)

        response = self.client.get("/order/admin/orders/4001/duplicates/")

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_status_endpoint_reports_conflicts(self):
        LineItem.objects.filter(pk="li-2").update(status=LineItem.Status.INACTIVE)
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            "/order/admin/line-items/status/",
            {"ids": ["li-2", "li-3"], "status": "removed", "expected_status": "active"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT, response.data)
        self.assertIn("li-2", response.data["failed"])
        self.assertEqual(LineItem.objects.get(pk="li-3").status, LineItem.Status.ACTIVE)

    def test_status_endpoint_updates_group(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            "/order/admin/line-items/status/",
            {"ids": ["li-2", "li-3"], "status": "inactive", "reason": "duplicate"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["updated"], ["li-2", "li-3"])

    def test_merge_endpoint(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post("/order/admin/orders/4001/duplicates/merge/", {}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["kept"], ["li-1"])
        self.assertEqual(LineItem.objects.filter(status=LineItem.Status.ACTIVE).count(), 1)

    def test_ingest_endpoint(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            "/order/admin/orders/",
            {
                "order_id": "4002",
                "order_name": "#4002",
                "line_items": [
                    {"line_item_id": "li-9", "product_id": "p9", "vendor_name": "Acme Prints", "price": "10.00"},
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertEqual(response.data["created"], 1)
        self.assertTrue(LineItem.objects.filter(pk="li-9", order_id="4002").exists())
