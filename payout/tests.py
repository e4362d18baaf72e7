import uuid
from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import patch
from urllib.parse import quote

from django.db import DatabaseError, IntegrityError, OperationalError, transaction
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from account.models import User
from audit.models import AuditEvent
from order.models import LineItem, Order
from payout.models import BatchItem, PayoutDeduction, PayoutRule, SettlementBatch
from payout.services import (
    BatchCreationError,
    BatchOutcome,
    BatchStatusService,
    DateRange,
    PayoutRuleResolver,
    PayoutStoreError,
    PayoutValidationError,
    PendingItemResolver,
    RefundDeductionHandler,
    SettlementBatchCreator,
    StatusConflictError,
    compute_amount,
    money,
)

MARCH_15 = datetime(2024, 3, 15, 12, 0, tzinfo=dt_timezone.utc)
APRIL_2 = datetime(2024, 4, 2, 12, 0, tzinfo=dt_timezone.utc)


class PayoutFixtureMixin:
    vendor = "Acme Prints"

    def setUp(self):
        self.admin = User.objects.create_user(
            email="admin@example.com",
            password="Pass123!",
            role="ADMIN",
            is_staff=True,
        )
        self.order = Order.objects.create(id="5001", order_name="#5001")
        PayoutRule.objects.create(product_id="poster", vendor_name=self.vendor, payout_amount=Decimal("30"), is_percentage=True)
        PayoutRule.objects.create(product_id="print", vendor_name=self.vendor, payout_amount=Decimal("50"), is_percentage=True)
        PayoutRule.objects.create(product_id="mug", vendor_name=self.vendor, payout_amount=Decimal("40"), is_percentage=False)

    def make_item(self, line_item_id, product_id="poster", price="100.00", **extra):
        defaults = {
            "vendor_name": self.vendor,
            "fulfillment_status": LineItem.FulfillmentStatus.FULFILLED,
            "fulfilled_at": timezone.now(),
        }
        defaults.update(extra)
        return LineItem.objects.create(
            order=self.order,
            line_item_id=line_item_id,
            product_id=product_id,
            price=Decimal(price),
            **defaults,
        )

    def attach(self, item, batch_status=SettlementBatch.Status.REQUESTED, amount="30.00"):
        batch = SettlementBatch.objects.create(
            vendor_name=item.vendor_name,
            total_amount=Decimal(amount),
            net_amount=Decimal(amount),
            status=batch_status,
            reference=f"REF-{item.pk}",
        )
        BatchItem.objects.create(
            batch=batch,
            line_item=item,
            order_id=item.order_id,
            product_id=item.product_id,
            amount=Decimal(amount),
            claim_token=uuid.uuid4(),
        )
        return batch


class PayoutAmountCalculatorTests(TestCase):
    def test_percentage_rule(self):
        rule = PayoutRule(payout_amount=Decimal("30"), is_percentage=True)
        self.assertEqual(money(compute_amount(Decimal("100.00"), rule)), Decimal("30.00"))

    def test_flat_rule_ignores_price(self):
        rule = PayoutRule(payout_amount=Decimal("40"), is_percentage=False)
        self.assertEqual(money(compute_amount(Decimal("250.00"), rule)), Decimal("40.00"))
        # Flat fees are never clamped to the price.
        self.assertEqual(money(compute_amount(Decimal("10.00"), rule)), Decimal("40.00"))

    def test_missing_rule_is_undetermined_not_zero(self):
        self.assertIsNone(compute_amount(Decimal("100.00"), None))

    def test_partial_refund_uses_remaining_price(self):
        rule = PayoutRule(payout_amount=Decimal("50"), is_percentage=True)
        self.assertEqual(money(compute_amount(Decimal("100") - Decimal("40"), rule)), Decimal("30.00"))

    def test_money_rounds_half_up(self):
        self.assertEqual(money(Decimal("2.345")), Decimal("2.35"))
        self.assertEqual(money("3.3165"), Decimal("3.32"))


class PayoutRuleResolverTests(PayoutFixtureMixin, TestCase):
    def test_lookups_are_cached_per_instance(self):
        resolver = PayoutRuleResolver()

        with self.assertNumQueries(1):
            first = resolver.resolve_rule("poster", self.vendor)
            again = resolver.resolve_rule("poster", self.vendor)
        with self.assertNumQueries(1):
            self.assertIsNone(resolver.resolve_rule("sticker", self.vendor))
            self.assertIsNone(resolver.resolve_rule("sticker", self.vendor))

        self.assertEqual(first.payout_amount, Decimal("30.00"))
        self.assertIs(first, again)

    def test_rule_is_scoped_to_vendor(self):
        self.assertIsNone(PayoutRuleResolver().resolve_rule("poster", "Other Vendor"))

    def test_preload_fetches_pairs_in_one_query(self):
        resolver = PayoutRuleResolver()

        with self.assertNumQueries(1):
            resolver.preload([("poster", self.vendor), ("mug", self.vendor), ("sticker", self.vendor)])
        with self.assertNumQueries(0):
            self.assertTrue(resolver.resolve_rule("mug", self.vendor))
            self.assertIsNone(resolver.resolve_rule("sticker", self.vendor))

    def test_invalidate_drops_cached_rules(self):
        resolver = PayoutRuleResolver()
        resolver.resolve_rule("poster", self.vendor)
        PayoutRule.objects.filter(product_id="poster").update(payout_amount=Decimal("45"))

        self.assertEqual(resolver.resolve_rule("poster", self.vendor).payout_amount, Decimal("30.00"))
        resolver.invalidate()
        self.assertEqual(resolver.resolve_rule("poster", self.vendor).payout_amount, Decimal("45.00"))

    def test_resolver_accepts_a_queryset(self):
        resolver = PayoutRuleResolver(PayoutRule.objects.filter(is_percentage=True))

        self.assertIsNotNone(resolver.resolve_rule("poster", self.vendor))
        self.assertIsNone(resolver.resolve_rule("mug", self.vendor))


class PendingItemResolverTests(PayoutFixtureMixin, TestCase):
    def test_only_payable_items_are_returned(self):
        self.make_item("li-1")
        self.make_item("li-2", product_id="mug", price="250.00")
        self.make_item("li-3", status=LineItem.Status.INACTIVE)
        self.make_item("li-4", status=LineItem.Status.REMOVED)
        self.make_item("li-5", fulfillment_status=LineItem.FulfillmentStatus.PARTIAL)
        self.make_item("li-6", refund_status=LineItem.RefundStatus.FULL, refunded_amount=Decimal("100.00"))
        self.make_item("li-7", refund_status=LineItem.RefundStatus.PARTIAL, refunded_amount=Decimal("10.00"))
        self.make_item("li-8", vendor_name="Other Vendor")
        self.make_item("li-9", product_id="sticker")

        resolution = PendingItemResolver().find_eligible(self.vendor)

        self.assertEqual(resolution.line_item_ids, ["li-1", "li-2"])
        self.assertEqual(
            {entry.line_item.pk: entry.settled_amount for entry in resolution.items},
            {"li-1": Decimal("30.00"), "li-2": Decimal("40.00")},
        )
        self.assertEqual([item.pk for item in resolution.needs_pricing], ["li-9"])
        self.assertEqual(resolution.total_amount, Decimal("70.00"))

    def test_items_in_any_batch_are_excluded(self):
        requested = self.make_item("li-1")
        rejected = self.make_item("li-2")
        self.make_item("li-3")
        self.attach(requested, SettlementBatch.Status.REQUESTED)
        self.attach(rejected, SettlementBatch.Status.REJECTED)

        resolution = PendingItemResolver().find_eligible(self.vendor)

        self.assertEqual(resolution.line_item_ids, ["li-3"])
        self.assertEqual(resolution.already_paid_count, 2)

    def test_date_range_bounds_fulfillment_time(self):
        self.make_item("li-march", fulfilled_at=MARCH_15)
        self.make_item("li-april", fulfilled_at=APRIL_2)
        self.make_item("li-month-end", fulfilled_at=datetime(2024, 3, 31, 23, 30, tzinfo=dt_timezone.utc))

        by_month = PendingItemResolver().find_eligible(self.vendor, DateRange.for_month(2024, 3))
        by_days = PendingItemResolver().find_eligible(
            self.vendor, DateRange.from_dates(date(2024, 3, 31), date(2024, 4, 2))
        )

        self.assertEqual(sorted(by_month.line_item_ids), ["li-march", "li-month-end"])
        self.assertEqual(sorted(by_days.line_item_ids), ["li-april", "li-month-end"])

    def test_total_aggregates_unrounded_amounts(self):
        PayoutRule.objects.create(product_id="card", vendor_name=self.vendor, payout_amount=Decimal("33"), is_percentage=True)
        for n in range(3):
            self.make_item(f"card-{n}", product_id="card", price="10.05")

        resolution = PendingItemResolver().find_eligible(self.vendor)

        self.assertEqual([entry.settled_amount for entry in resolution.items], [Decimal("3.32")] * 3)
        self.assertEqual(resolution.total_amount, Decimal("9.95"))

    def test_amount_sanity_warnings_and_errors(self):
        PayoutRule.objects.create(product_id="refund-fee", vendor_name=self.vendor, payout_amount=Decimal("-5"), is_percentage=False)
        self.make_item("li-cheap", product_id="mug", price="20.00")
        self.make_item("li-free", product_id="poster", price="0.00")
        self.make_item("li-negative", product_id="refund-fee")

        resolution = PendingItemResolver().find_eligible(self.vendor)

        self.assertEqual(len(resolution.warnings), 2)
        self.assertIn("li-cheap", resolution.warnings[0])
        self.assertIn("li-free", resolution.warnings[1])
        self.assertEqual(len(resolution.errors), 1)
        self.assertIn("li-negative", resolution.errors[0])
        with self.assertRaises(PayoutValidationError):
            SettlementBatchCreator().create_batch(self.vendor)

    def test_blank_vendor_is_rejected_before_store_access(self):
        with self.assertNumQueries(0):
            with self.assertRaises(PayoutValidationError):
                PendingItemResolver().find_eligible("  ")

    @override_settings(PAYOUT_SETTLE_PARTIAL_REFUNDS=True)
    def test_partially_refunded_items_payable_when_enabled(self):
        self.make_item(
            "li-1",
            product_id="print",
            refund_status=LineItem.RefundStatus.PARTIAL,
            refunded_amount=Decimal("40.00"),
        )

        resolution = PendingItemResolver().find_eligible(self.vendor)

        self.assertEqual(resolution.items[0].settled_amount, Decimal("30.00"))

    def test_vendor_summary(self):
        paid = self.make_item("li-1")
        self.attach(paid, SettlementBatch.Status.COMPLETED)
        self.make_item("li-2", product_id="mug", price="250.00")
        self.make_item("li-3", product_id="sticker")
        self.make_item("li-4", fulfillment_status=LineItem.FulfillmentStatus.UNFULFILLED, fulfilled_at=None)

        summary = PendingItemResolver().summarize_vendor(self.vendor)
        with_paid = PendingItemResolver().summarize_vendor(self.vendor, include_paid=True)

        order = summary.orders[0]
        self.assertEqual(order.order_id, "5001")
        self.assertEqual(order.total_line_items, 4)
        self.assertEqual(order.fulfilled_line_items, 3)
        self.assertEqual(order.paid_line_items, 1)
        self.assertEqual(order.pending_line_items, 2)
        self.assertEqual(order.unpriced_line_items, 1)
        self.assertEqual(order.order_total, Decimal("550.00"))
        self.assertEqual(order.payout_amount, Decimal("40.00"))
        self.assertEqual(summary.pending_amount, Decimal("40.00"))
        self.assertEqual(summary.paid_amount, Decimal("30.00"))
        self.assertEqual(with_paid.orders[0].payout_amount, Decimal("70.00"))


class SettlementBatchCreatorTests(PayoutFixtureMixin, TestCase):
    def test_create_batch_attaches_every_pending_item(self):
        self.make_item("li-1")
        self.make_item("li-2", product_id="mug", price="250.00")
        self.make_item("li-9", product_id="sticker")

        result = SettlementBatchCreator().create_batch(self.vendor, requested_by=self.admin)

        self.assertEqual(result.outcome, BatchOutcome.CREATED)
        batch = result.batch
        self.assertEqual(batch.status, SettlementBatch.Status.REQUESTED)
        self.assertEqual(batch.source, SettlementBatch.Source.REDEMPTION)
        self.assertTrue(batch.reference.startswith("PAYOUT-ACME-PRINTS-"))
        self.assertEqual(batch.total_amount, Decimal("70.00"))
        self.assertEqual(batch.net_amount, Decimal("70.00"))
        self.assertEqual(result.line_item_ids, ["li-1", "li-2"])
        self.assertEqual(result.needs_pricing, ["li-9"])
        self.assertEqual(
            dict(batch.items.values_list("line_item_id", "amount")),
            {"li-1": Decimal("30.00"), "li-2": Decimal("40.00")},
        )
        self.assertEqual(AuditEvent.objects.filter(action=AuditEvent.Action.BATCH_CREATED).count(), 1)
        self.assertEqual(PendingItemResolver().find_eligible(self.vendor).items, [])

    def test_settled_amounts_are_frozen(self):
        self.make_item("li-1")
        result = SettlementBatchCreator().create_batch(self.vendor)

        PayoutRule.objects.filter(product_id="poster").update(payout_amount=Decimal("90"))

        self.assertEqual(BatchItem.objects.get(line_item_id="li-1").amount, Decimal("30.00"))
        result.batch.refresh_from_db()
        self.assertEqual(result.batch.total_amount, Decimal("30.00"))

    def test_nothing_eligible(self):
        self.make_item("li-9", product_id="sticker")

        result = SettlementBatchCreator().create_batch(self.vendor)

        self.assertEqual(result.outcome, BatchOutcome.NOTHING_ELIGIBLE)
        self.assertEqual(result.needs_pricing, ["li-9"])
        self.assertFalse(SettlementBatch.objects.exists())

    def test_item_insert_failure_leaves_no_batch(self):
        self.make_item("li-1")
        self.make_item("li-2")

        with patch.object(BatchItem.objects, "bulk_create", side_effect=DatabaseError("constraint failed")):
            with self.assertRaises(BatchCreationError):
                SettlementBatchCreator().create_batch(self.vendor)

        self.assertFalse(SettlementBatch.objects.exists())
        self.assertFalse(BatchItem.objects.exists())
        self.assertFalse(AuditEvent.objects.exists())
        self.assertEqual(PendingItemResolver().find_eligible(self.vendor).line_item_ids, ["li-1", "li-2"])

    def test_store_timeout_is_reported_as_store_error(self):
        self.make_item("li-1")

        with patch.object(BatchItem.objects, "bulk_create", side_effect=OperationalError("statement timeout")):
            with self.assertRaises(PayoutStoreError):
                SettlementBatchCreator().create_batch(self.vendor)

        self.assertFalse(SettlementBatch.objects.exists())

    def test_concurrent_redemptions_share_nothing(self):
        for n in range(3):
            self.make_item(f"li-{n}")
        eligible = set(PendingItemResolver().find_eligible(self.vendor).line_item_ids)
        seen_by_a = [entry.line_item for entry in PendingItemResolver().find_eligible(self.vendor).items]
        seen_by_b = [entry.line_item for entry in PendingItemResolver().find_eligible(self.vendor).items]

        first = SettlementBatchCreator().create_batch(self.vendor, seen_by_a)
        second = SettlementBatchCreator().create_batch(self.vendor, seen_by_b)

        self.assertEqual(first.outcome, BatchOutcome.CREATED)
        self.assertEqual(second.outcome, BatchOutcome.ALREADY_PAID)
        self.assertEqual(SettlementBatch.objects.count(), 1)
        attached = list(BatchItem.objects.values_list("line_item_id", flat=True))
        self.assertEqual(len(attached), len(set(attached)))
        self.assertEqual(set(attached), eligible)

    def test_overlapping_redemptions_split_the_items(self):
        for n in range(3):
            self.make_item(f"li-{n}")
        items = [entry.line_item for entry in PendingItemResolver().find_eligible(self.vendor).items]

        first = SettlementBatchCreator().create_batch(self.vendor, items[:2])
        second = SettlementBatchCreator().create_batch(self.vendor, items)

        self.assertEqual(first.line_item_ids, ["li-0", "li-1"])
        self.assertEqual(second.outcome, BatchOutcome.CREATED)
        self.assertEqual(second.line_item_ids, ["li-2"])
        self.assertEqual(second.already_paid, ["li-0", "li-1"])
        self.assertEqual(second.batch.total_amount, Decimal("30.00"))
        attached = list(BatchItem.objects.values_list("line_item_id", flat=True))
        self.assertEqual(sorted(attached), ["li-0", "li-1", "li-2"])

    def test_settlement_committed_while_waiting_for_locks_is_skipped(self):
        items = [self.make_item(f"li-{n}") for n in range(3)]
        creator = SettlementBatchCreator()
        real_candidates = creator.resolver.candidates

        def candidates_after_winner(vendor_name, date_range=None):
            # Another redemption commits li-0 while this call waits on the row locks.
            if not BatchItem.objects.exists():
                self.attach(items[0])
            return real_candidates(vendor_name, date_range)

        with patch.object(creator.resolver, "candidates", side_effect=candidates_after_winner):
            result = creator.create_batch(self.vendor, items)

        self.assertEqual(result.outcome, BatchOutcome.CREATED)
        self.assertEqual(result.line_item_ids, ["li-1", "li-2"])
        self.assertEqual(result.already_paid, ["li-0"])
        self.assertEqual(result.batch.total_amount, Decimal("60.00"))
        self.assertEqual(BatchItem.objects.filter(batch=result.batch).count(), 2)

    def test_lost_insert_rolls_back_only_own_rows(self):
        first_item = self.make_item("li-1")
        second_item = self.make_item("li-2")
        winner = SettlementBatchCreator().create_batch(self.vendor, [first_item])

        # Simulate a concurrent writer that committed after this call re-verified.
        with patch.object(
            SettlementBatchCreator,
            "_reverify",
            autospec=True,
            side_effect=lambda creator, vendor_name, items, require_eligible: (items, []),
        ):
            loser = SettlementBatchCreator().create_batch(self.vendor, [first_item, second_item])

        self.assertEqual(loser.outcome, BatchOutcome.ALREADY_PAID)
        self.assertEqual(loser.already_paid, ["li-1"])
        self.assertEqual(SettlementBatch.objects.count(), 1)
        self.assertEqual(BatchItem.objects.get(line_item_id="li-1").batch, winner.batch)
        self.assertFalse(BatchItem.objects.filter(line_item_id="li-2").exists())

    def test_item_refunded_after_resolution_conflicts(self):
        self.make_item("li-1")
        self.make_item("li-2")
        items = [entry.line_item for entry in PendingItemResolver().find_eligible(self.vendor).items]
        LineItem.objects.filter(pk="li-2").update(
            refund_status=LineItem.RefundStatus.FULL,
            refunded_amount=Decimal("100.00"),
        )

        with self.assertRaises(StatusConflictError) as ctx:
            SettlementBatchCreator().create_batch(self.vendor, items)

        self.assertEqual(ctx.exception.conflicts, {"li-2": "no longer payable"})
        self.assertFalse(SettlementBatch.objects.exists())

    def test_foreign_items_are_rejected(self):
        other = self.make_item("li-x", vendor_name="Other Vendor")

        with self.assertRaises(PayoutValidationError):
            SettlementBatchCreator().create_batch(self.vendor, [other])

    def test_pending_deductions_applied_oldest_first(self):
        self.make_item("li-1")
        now = timezone.now()
        deductions = []
        for offset, amount in enumerate(["10.00", "25.00", "5.00"]):
            refunded = self.make_item(
                f"r-{offset}",
                refund_status=LineItem.RefundStatus.FULL,
                refunded_amount=Decimal("100.00"),
            )
            deduction = PayoutDeduction.objects.create(
                vendor_name=self.vendor,
                line_item=refunded,
                refund_type="full",
                amount=Decimal(amount),
            )
            PayoutDeduction.objects.filter(pk=deduction.pk).update(created_at=now + timedelta(seconds=offset))
            deductions.append(deduction)
        self.assertEqual(PendingItemResolver().find_eligible(self.vendor).pending_deductions, Decimal("40.00"))

        result = SettlementBatchCreator().create_batch(self.vendor)

        batch = result.batch
        self.assertEqual(batch.total_amount, Decimal("30.00"))
        self.assertEqual(batch.deduction_amount, Decimal("10.00"))
        self.assertEqual(batch.net_amount, Decimal("20.00"))
        self.assertEqual(result.deduction_amount, Decimal("10.00"))
        statuses = {d.pk: d.status for d in PayoutDeduction.objects.all()}
        self.assertEqual(statuses[deductions[0].pk], PayoutDeduction.Status.APPLIED)
        self.assertEqual(statuses[deductions[1].pk], PayoutDeduction.Status.PENDING)
        self.assertEqual(statuses[deductions[2].pk], PayoutDeduction.Status.PENDING)

    def test_line_item_can_only_be_attached_once(self):
        item = self.make_item("li-1")
        self.attach(item)
        other_batch = SettlementBatch.objects.create(
            vendor_name=self.vendor,
            total_amount=Decimal("30.00"),
            net_amount=Decimal("30.00"),
            reference="REF-OTHER",
        )

        with self.assertRaises(IntegrityError), transaction.atomic():
            BatchItem.objects.create(
                batch=other_batch,
                line_item=item,
                order_id=item.order_id,
                product_id=item.product_id,
                amount=Decimal("30.00"),
                claim_token=uuid.uuid4(),
            )


class MarkMonthPaidTests(PayoutFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.make_item("li-1", fulfilled_at=MARCH_15)
        self.make_item("li-2", product_id="mug", price="250.00", fulfilled_at=MARCH_15)
        self.make_item("li-april", fulfilled_at=APRIL_2)

    def test_marks_month_with_batch_record(self):
        result = SettlementBatchCreator().mark_month_paid(
            self.vendor, 2024, 3, create_batch_record=True, marked_by=self.admin
        )

        self.assertEqual(result.outcome, BatchOutcome.CREATED)
        self.assertEqual(result.items_marked, 2)
        self.assertEqual(result.total_amount, Decimal("70.00"))
        batch = result.batch
        self.assertTrue(batch.reference.startswith("PAY-2024-03-"))
        self.assertEqual(batch.status, SettlementBatch.Status.COMPLETED)
        self.assertEqual(batch.source, SettlementBatch.Source.MANUAL)
        self.assertEqual(batch.processed_by, self.admin)
        item = BatchItem.objects.get(line_item_id="li-1")
        self.assertTrue(item.manually_marked_paid)
        self.assertEqual(item.marked_by, self.admin)
        self.assertIsNotNone(item.marked_at)
        self.assertEqual(item.payout_reference, batch.reference)
        self.assertFalse(BatchItem.objects.filter(line_item_id="li-april").exists())

    def test_second_call_reports_already_paid(self):
        creator = SettlementBatchCreator()
        creator.mark_month_paid(self.vendor, 2024, 3, reference="EXT-1", marked_by=self.admin)
        count = BatchItem.objects.count()

        again = creator.mark_month_paid(self.vendor, 2024, 3, reference="EXT-1", marked_by=self.admin)

        self.assertEqual(again.outcome, BatchOutcome.ALREADY_PAID)
        self.assertEqual(BatchItem.objects.count(), count)

    def test_without_batch_record(self):
        result = SettlementBatchCreator().mark_month_paid(
            self.vendor, 2024, 3, reference="EXT-77", marked_by=self.admin
        )

        self.assertIsNone(result.batch)
        self.assertEqual(result.reference, "EXT-77")
        self.assertFalse(SettlementBatch.objects.exists())
        self.assertEqual(
            set(BatchItem.objects.filter(batch__isnull=True).values_list("line_item_id", flat=True)),
            {"li-1", "li-2"},
        )
        event = AuditEvent.objects.get(action=AuditEvent.Action.MARKED_PAID)
        self.assertEqual(event.target_type, "line_items")
        self.assertEqual(event.actor, self.admin)

    def test_empty_month_is_nothing_eligible(self):
        result = SettlementBatchCreator().mark_month_paid(self.vendor, 2024, 5)

        self.assertEqual(result.outcome, BatchOutcome.NOTHING_ELIGIBLE)

    def test_invalid_input_is_rejected_before_store_access(self):
        creator = SettlementBatchCreator()
        with self.assertNumQueries(0):
            for year, month in [(2024, 13), (2024, 0), (None, 3), (2024, "march")]:
                with self.assertRaises(PayoutValidationError):
                    creator.mark_month_paid(self.vendor, year, month)
            with self.assertRaises(PayoutValidationError):
                creator.mark_month_paid("", 2024, 3)


class MarkPaidTests(PayoutFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.make_item("li-1")
        self.make_item("li-2", product_id="mug", price="250.00")
        self.make_item(
            "li-unfulfilled",
            fulfillment_status=LineItem.FulfillmentStatus.UNFULFILLED,
            fulfilled_at=None,
        )

    def test_marks_selected_items(self):
        result = SettlementBatchCreator().mark_paid(
            ["li-1"], create_batch_record=True, marked_by=self.admin
        )

        self.assertEqual(result.outcome, BatchOutcome.CREATED)
        self.assertTrue(result.batch.reference.startswith("MANUAL-"))
        self.assertEqual(result.batch.total_amount, Decimal("30.00"))
        self.assertTrue(BatchItem.objects.get(line_item_id="li-1").manually_marked_paid)
        self.assertFalse(BatchItem.objects.filter(line_item_id="li-2").exists())

    def test_validation_errors_are_collected(self):
        with self.assertRaises(PayoutValidationError) as ctx:
            SettlementBatchCreator().mark_paid(["li-1", "li-unfulfilled"])

        self.assertTrue(any(e.startswith("li-unfulfilled: not fulfilled") for e in ctx.exception.errors))
        self.assertFalse(BatchItem.objects.exists())

    def test_unknown_ids_are_rejected(self):
        with self.assertRaises(PayoutValidationError) as ctx:
            SettlementBatchCreator().mark_paid(["li-1", "nope"])

        self.assertEqual(ctx.exception.errors, ["nope: not found"])

    def test_items_must_share_a_vendor(self):
        self.make_item("li-other", vendor_name="Other Vendor")

        with self.assertRaises(PayoutValidationError):
            SettlementBatchCreator().mark_paid(["li-1", "li-other"])

    def test_skip_validation_allows_unfulfilled_items(self):
        result = SettlementBatchCreator().mark_paid(["li-unfulfilled"], skip_validation=True, marked_by=self.admin)

        self.assertEqual(result.outcome, BatchOutcome.CREATED)
        self.assertTrue(BatchItem.objects.filter(line_item_id="li-unfulfilled").exists())

    def test_already_paid(self):
        creator = SettlementBatchCreator()
        creator.mark_paid(["li-1"])

        self.assertEqual(creator.mark_paid(["li-1"]).outcome, BatchOutcome.ALREADY_PAID)
        with self.assertRaises(PayoutValidationError):
            creator.mark_paid(["li-1", "li-2"])

    def test_by_order_marks_vendor_items(self):
        result = SettlementBatchCreator().mark_paid(order_ids=["5001"], vendor_name=self.vendor)

        self.assertEqual(sorted(result.line_item_ids), ["li-1", "li-2"])

    def test_order_ids_need_vendor(self):
        with self.assertRaises(PayoutValidationError):
            SettlementBatchCreator().mark_paid(order_ids=["5001"])


class BatchStatusServiceTests(PayoutFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.make_item("li-1")
        self.batch = SettlementBatchCreator().create_batch(self.vendor).batch

    def test_happy_path_to_completed(self):
        BatchStatusService.transition(self.batch.pk, SettlementBatch.Status.PROCESSING, actor=self.admin)
        batch = BatchStatusService.transition(
            self.batch.pk, SettlementBatch.Status.COMPLETED, actor=self.admin, notes="wired"
        )

        self.assertEqual(batch.status, SettlementBatch.Status.COMPLETED)
        self.assertEqual(batch.processed_by, self.admin)
        self.assertIsNotNone(batch.processed_at)
        self.assertIn("wired", batch.notes)
        self.assertEqual(AuditEvent.objects.filter(action=AuditEvent.Action.BATCH_TRANSITIONED).count(), 2)

    def test_cannot_skip_processing(self):
        with self.assertRaises(StatusConflictError):
            BatchStatusService.transition(self.batch.pk, SettlementBatch.Status.COMPLETED)

    def test_terminal_states_are_final(self):
        BatchStatusService.transition(self.batch.pk, SettlementBatch.Status.REJECTED)

        for target in SettlementBatch.Status.values:
            with self.assertRaises(StatusConflictError):
                BatchStatusService.transition(self.batch.pk, target)
        self.batch.refresh_from_db()
        self.assertEqual(self.batch.status, SettlementBatch.Status.REJECTED)

    def test_unknown_status_is_rejected(self):
        with self.assertRaises(PayoutValidationError):
            BatchStatusService.transition(self.batch.pk, "paid")

    def test_rejecting_releases_withheld_deductions(self):
        refunded = self.make_item("r-1", refund_status=LineItem.RefundStatus.FULL, refunded_amount=Decimal("100.00"))
        PayoutDeduction.objects.create(vendor_name=self.vendor, line_item=refunded, refund_type="full", amount=Decimal("10.00"))
        self.make_item("li-2")
        batch = SettlementBatchCreator().create_batch(self.vendor).batch
        self.assertEqual(batch.deduction_amount, Decimal("10.00"))

        batch = BatchStatusService.transition(batch.pk, SettlementBatch.Status.REJECTED)

        self.assertEqual(batch.deduction_amount, Decimal("0.00"))
        self.assertEqual(batch.net_amount, batch.total_amount)
        deduction = PayoutDeduction.objects.get()
        self.assertEqual(deduction.status, PayoutDeduction.Status.PENDING)
        self.assertIsNone(deduction.applied_batch)

    def test_rejecting_voids_offsets_for_its_own_unpaid_items(self):
        refund = RefundDeductionHandler().apply_refund("li-1", "full", actor=self.admin)
        self.assertEqual(refund.deduction_amount, Decimal("30.00"))

        BatchStatusService.transition(self.batch.pk, SettlementBatch.Status.REJECTED, actor=self.admin)

        self.assertFalse(PayoutDeduction.objects.exists())
        self.make_item("li-2")
        result = SettlementBatchCreator().create_batch(self.vendor)
        self.assertEqual(result.batch.total_amount, Decimal("30.00"))
        self.assertEqual(result.deduction_amount, Decimal("0.00"))
        self.assertEqual(result.batch.net_amount, Decimal("30.00"))
        event = AuditEvent.objects.filter(action=AuditEvent.Action.BATCH_TRANSITIONED).get()
        self.assertEqual(event.after["voided_deductions"], 1)

    def test_completing_keeps_offsets_for_paid_items(self):
        RefundDeductionHandler().apply_refund("li-1", "full", actor=self.admin)

        BatchStatusService.transition(self.batch.pk, SettlementBatch.Status.PROCESSING)
        BatchStatusService.transition(self.batch.pk, SettlementBatch.Status.COMPLETED)

        deduction = PayoutDeduction.objects.get()
        self.assertEqual(deduction.status, PayoutDeduction.Status.PENDING)
        self.assertEqual(deduction.amount, Decimal("30.00"))


class RefundDeductionHandlerTests(PayoutFixtureMixin, TestCase):
    def test_partial_refund_on_unpaid_item_recomputes_payout(self):
        self.make_item("li-1", product_id="print")

        result = RefundDeductionHandler().apply_refund("li-1", "partial", Decimal("40.00"), actor=self.admin)

        self.assertEqual(result.new_status, LineItem.RefundStatus.PARTIAL)
        self.assertEqual(result.earned_amount, Decimal("30.00"))
        self.assertIsNone(result.deduction)
        item = LineItem.objects.get(pk="li-1")
        self.assertEqual(item.refunded_amount, Decimal("40.00"))
        self.assertEqual(PendingItemResolver().find_eligible(self.vendor).items, [])
        event = AuditEvent.objects.get(action=AuditEvent.Action.REFUND_APPLIED)
        self.assertEqual(event.before["refund_status"], "none")
        self.assertEqual(event.after["refund_status"], "partial")

    def test_full_refund_makes_item_ineligible(self):
        self.make_item("li-1")

        result = RefundDeductionHandler().apply_refund("li-1", "full")

        self.assertEqual(result.earned_amount, Decimal("0.00"))
        self.assertEqual(result.refunded_amount, Decimal("100.00"))
        self.assertEqual(PendingItemResolver().find_eligible(self.vendor).items, [])

    def test_refunds_on_a_settled_item_become_deductions(self):
        self.make_item("li-1", product_id="print")
        SettlementBatchCreator().create_batch(self.vendor)
        handler = RefundDeductionHandler()

        partial = handler.apply_refund("li-1", "partial", "40.00")
        replay = handler.apply_refund("li-1", "partial", "40.00")
        full = handler.apply_refund("li-1", "full")
        full_replay = handler.apply_refund("li-1", "full")

        self.assertEqual(partial.deduction_amount, Decimal("20.00"))
        self.assertTrue(replay.already_applied)
        self.assertEqual(replay.deduction_amount, Decimal("0.00"))
        self.assertEqual(full.deduction_amount, Decimal("30.00"))
        self.assertTrue(full_replay.already_applied)
        self.assertEqual(PayoutDeduction.objects.count(), 2)
        self.assertEqual(
            sum(d.amount for d in PayoutDeduction.objects.all()),
            BatchItem.objects.get(line_item_id="li-1").amount,
        )

    def test_backward_and_conflicting_transitions_are_rejected(self):
        self.make_item("li-1")
        self.make_item("li-2")
        handler = RefundDeductionHandler()
        handler.apply_refund("li-1", "full")
        handler.apply_refund("li-2", "partial", "10.00")

        with self.assertRaises(StatusConflictError) as ctx:
            handler.apply_refund("li-1", "partial", "10.00")
        self.assertIn("li-1", ctx.exception.conflicts)
        with self.assertRaises(StatusConflictError):
            handler.apply_refund("li-2", "partial", "15.00")

        self.assertEqual(LineItem.objects.get(pk="li-1").refund_status, LineItem.RefundStatus.FULL)
        self.assertEqual(LineItem.objects.get(pk="li-2").refunded_amount, Decimal("10.00"))

    def test_no_deduction_for_items_in_a_rejected_batch(self):
        self.make_item("li-1")
        batch = SettlementBatchCreator().create_batch(self.vendor).batch
        BatchStatusService.transition(batch.pk, SettlementBatch.Status.REJECTED)

        result = RefundDeductionHandler().apply_refund("li-1", "full")

        self.assertIsNone(result.deduction)
        self.assertFalse(PayoutDeduction.objects.exists())

    def test_manually_marked_item_gets_full_deduction(self):
        self.make_item("li-1")
        SettlementBatchCreator().mark_paid(["li-1"], reference="EXT-9")

        result = RefundDeductionHandler().apply_refund("li-1", "full")

        self.assertEqual(result.deduction_amount, Decimal("30.00"))
        self.assertEqual(result.deduction.status, PayoutDeduction.Status.PENDING)

    def test_settled_item_without_rule_scales_paid_amount(self):
        item = self.make_item("li-1", product_id="sticker")
        self.attach(item, SettlementBatch.Status.COMPLETED, amount="20.00")

        result = RefundDeductionHandler().apply_refund("li-1", "partial", "25.00")

        self.assertIsNone(result.earned_amount)
        self.assertEqual(result.deduction_amount, Decimal("5.00"))

    def test_invalid_refunds(self):
        self.make_item("li-1")
        handler = RefundDeductionHandler()

        for refund_type, amount in [("partial", "150.00"), ("partial", "0"), ("partial", None), ("none", None), ("bogus", None)]:
            with self.assertRaises(PayoutValidationError):
                handler.apply_refund("li-1", refund_type, amount)
        self.assertEqual(LineItem.objects.get(pk="li-1").refund_status, LineItem.RefundStatus.NONE)

    def test_unknown_line_item(self):
        with self.assertRaises(LineItem.DoesNotExist):
            RefundDeductionHandler().apply_refund("missing", "full")


class PayoutViewsTests(PayoutFixtureMixin, APITestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.vendor_user = User.objects.create_user(
            email="vendor@example.com",
            password="Pass123!",
            vendor_name=self.vendor,
        )
        self.make_item("li-1", fulfilled_at=MARCH_15)
        self.make_item("li-9", product_id="sticker", fulfilled_at=MARCH_15)

    def test_admin_pending_separates_needs_pricing(self):
        self.client.force_authenticate(self.admin)

        response = self.client.get("/payout/pending/", {"vendor_name": self.vendor})

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["total_amount"], "30.00")
        self.assertEqual([i["line_item_id"] for i in response.data["items"]], ["li-1"])
        self.assertEqual(response.data["items"][0]["amount"], "30.00")
        self.assertEqual([i["line_item_id"] for i in response.data["needs_pricing"]], ["li-9"])

    def test_pending_requires_vendor_and_complete_range(self):
        self.client.force_authenticate(self.admin)

        self.assertEqual(self.client.get("/payout/pending/").status_code, status.HTTP_400_BAD_REQUEST)
        response = self.client.get("/payout/pending/", {"vendor_name": self.vendor, "start": "2024-03-01"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_vendor_cannot_use_admin_endpoints(self):
        self.client.force_authenticate(self.vendor_user)

        response = self.client.get("/payout/pending/", {"vendor_name": self.vendor})

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_vendor_redeem_then_nothing_left(self):
        self.client.force_authenticate(self.vendor_user)

        pending = self.client.get("/payout/vendor/pending/")
        first = self.client.post("/payout/redeem/", {}, format="json")
        second = self.client.post("/payout/redeem/", {}, format="json")

        self.assertEqual(pending.data["total_amount"], "30.00")
        self.assertEqual(first.status_code, status.HTTP_201_CREATED, first.data)
        self.assertEqual(first.data["outcome"], "created")
        self.assertEqual(first.data["batch"]["status"], "requested")
        self.assertEqual(second.status_code, status.HTTP_400_BAD_REQUEST, second.data)
        self.assertEqual(second.data["outcome"], "nothing_eligible")
        self.assertEqual(second.data["needs_pricing"], ["li-9"])

    def test_mark_month_paid_twice(self):
        self.client.force_authenticate(self.admin)
        payload = {"vendor_name": self.vendor, "year": 2024, "month": 3, "create_batch_record": True}

        first = self.client.post("/payout/admin/mark-month-paid/", payload, format="json")
        second = self.client.post("/payout/admin/mark-month-paid/", payload, format="json")

        self.assertEqual(first.status_code, status.HTTP_201_CREATED, first.data)
        self.assertEqual(first.data["items_marked"], 1)
        self.assertEqual(second.status_code, status.HTTP_409_CONFLICT, second.data)
        self.assertEqual(second.data["outcome"], "already_paid")

    def test_mark_month_paid_rejects_bad_month(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            "/payout/admin/mark-month-paid/",
            {"vendor_name": self.vendor, "year": 2024, "month": 13},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_mark_paid_validation_errors(self):
        self.make_item("li-open", fulfillment_status=LineItem.FulfillmentStatus.UNFULFILLED, fulfilled_at=None)
        self.client.force_authenticate(self.admin)

        response = self.client.post("/payout/admin/mark-paid/", {"line_item_ids": ["li-open"]}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST, response.data)
        self.assertTrue(response.data["errors"])

    def test_admin_batch_and_transition(self):
        self.client.force_authenticate(self.admin)

        created = self.client.post("/payout/admin/batches/", {"vendor_name": self.vendor}, format="json")
        batch_id = created.data["batch"]["id"]
        processing = self.client.post(
            f"/payout/admin/batches/{batch_id}/transition/", {"status": "processing"}, format="json"
        )
        backwards = self.client.post(
            f"/payout/admin/batches/{batch_id}/transition/", {"status": "requested"}, format="json"
        )

        self.assertEqual(created.status_code, status.HTTP_201_CREATED, created.data)
        self.assertEqual(processing.status_code, status.HTTP_200_OK, processing.data)
        self.assertEqual(processing.data["status"], "processing")
        self.assertEqual(backwards.status_code, status.HTTP_409_CONFLICT)
        self.assertIn(batch_id, backwards.data["conflicts"])

    def test_refund_endpoint(self):
        self.client.force_authenticate(self.admin)

        too_much = self.client.post(
            "/payout/admin/refunds/",
            {"line_item_id": "li-1", "refund_type": "partial", "refunded_amount": "150.00"},
            format="json",
        )
        full = self.client.post("/payout/admin/refunds/", {"line_item_id": "li-1", "refund_type": "full"}, format="json")
        backwards = self.client.post(
            "/payout/admin/refunds/",
            {"line_item_id": "li-1", "refund_type": "partial", "refunded_amount": "10.00"},
            format="json",
        )
        missing = self.client.post("/payout/admin/refunds/", {"line_item_id": "nope", "refund_type": "full"}, format="json")

        self.assertEqual(too_much.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(full.status_code, status.HTTP_200_OK, full.data)
        self.assertEqual(full.data["new_status"], "full")
        self.assertIsNone(full.data["deduction"])
        self.assertEqual(backwards.status_code, status.HTTP_409_CONFLICT)
        self.assertIn("li-1", backwards.data["conflicts"])
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)

    def test_batch_list_is_scoped_to_vendor(self):
        self.attach(LineItem.objects.get(pk="li-1"))
        other = self.make_item("li-other", vendor_name="Other Vendor")
        self.attach(other)

        self.client.force_authenticate(self.vendor_user)
        own = self.client.get("/payout/batches/")
        self.client.force_authenticate(self.admin)
        everything = self.client.get("/payout/batches/")

        self.assertEqual([b["vendor_name"] for b in own.data], [self.vendor])
        self.assertEqual(len(everything.data), 2)

    def test_store_failure_maps_to_503(self):
        self.client.force_authenticate(self.admin)

        with patch.object(PendingItemResolver, "candidates", side_effect=OperationalError("database is locked")):
            response = self.client.get("/payout/pending/", {"vendor_name": self.vendor})

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)

    def test_vendor_summary_endpoint(self):
        self.client.force_authenticate(self.admin)

        response = self.client.get(f"/payout/admin/vendors/{quote(self.vendor)}/summary/")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["pending_amount"], "30.00")
        self.assertEqual(response.data["orders"][0]["unpriced_line_items"], 1)
