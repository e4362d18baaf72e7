import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests
from django.test import TestCase, override_settings

from account.models import User
from audit.models import AuditEvent
from audit.services import AuditLogService


class AuditLogServiceTests(TestCase):
    def setUp(self):
        self.admin = User.objects.create_user(email="admin@example.com", password="Pass123!", role="ADMIN", is_staff=True)

    def test_record_persists_before_and_after(self):
        event = AuditLogService.record(
            action=AuditEvent.Action.REFUND_APPLIED,
            actor=self.admin,
            target_type="line_item",
            target_id="li-1",
            before={"refund_status": "none"},
            after={"refund_status": "full", "deduction_amount": Decimal("12.50")},
        )

        stored = AuditEvent.objects.get(pk=event.pk)
        self.assertEqual(stored.actor, self.admin)
        self.assertEqual(stored.before, {"refund_status": "none"})
        self.assertEqual(stored.after["deduction_amount"], "12.50")

    @override_settings(AUDIT_WEBHOOK_URL="")
    @patch("audit.services.requests.post")
    def test_no_webhook_configured(self, mock_post):
        with self.captureOnCommitCallbacks(execute=True):
            AuditLogService.record(action=AuditEvent.Action.MARKED_PAID, target_type="line_items", target_id="x")

        mock_post.assert_not_called()

    @override_settings(AUDIT_WEBHOOK_URL="https://audit.example.com/events", AUDIT_WEBHOOK_TIMEOUT_SECONDS=3)
    @patch("audit.services.requests.post")
    def test_event_is_forwarded_after_commit(self, mock_post):
        mock_post.return_value = MagicMock(ok=True, status_code=200)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            event = AuditLogService.record(
                action=AuditEvent.Action.BATCH_CREATED,
                actor=self.admin,
                target_type="settlement_batch",
                target_id="b-1",
                after={"total_amount": Decimal("30.00")},
            )
            mock_post.assert_not_called()

        self.assertEqual(len(callbacks), 1)
        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://audit.example.com/events")
        self.assertEqual(kwargs["timeout"], 3)
        body = json.loads(kwargs["data"])
        self.assertEqual(body["id"], str(event.id))
        self.assertEqual(body["action"], "batch_created")
        self.assertEqual(body["actor"], "admin@example.com")
        self.assertEqual(body["after"], {"total_amount": "30.00"})

    @override_settings(AUDIT_WEBHOOK_URL="https://audit.example.com/events")
    @patch("audit.services.requests.post")
    def test_system_event_is_forwarded_without_actor(self, mock_post):
        mock_post.return_value = MagicMock(ok=True, status_code=200)

        with self.captureOnCommitCallbacks(execute=True):
            AuditLogService.record(action=AuditEvent.Action.MARKED_PAID, target_type="line_items", target_id="x")

        body = json.loads(mock_post.call_args.kwargs["data"])
        self.assertIsNone(body["actor"])

    @override_settings(AUDIT_WEBHOOK_URL="https://audit.example.com/events")
    @patch("audit.services.requests.post", side_effect=requests.ConnectionError("refused"))
    def test_webhook_failure_does_not_raise(self, mock_post):
        with self.captureOnCommitCallbacks(execute=True):
            AuditLogService.record(action=AuditEvent.Action.MARKED_PAID, target_type="line_items", target_id="x")

        mock_post.assert_called_once()
        self.assertEqual(AuditEvent.objects.count(), 1)
