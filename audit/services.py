import json
import logging
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

from .models import AuditEvent

logger = logging.getLogger(__name__)


class AuditLogService:
    """
    Audit sink for financial actions.

    Events are written in the caller's transaction, so a rolled back batch
    never leaves an audit trail behind. Forwarding to the external webhook
    happens only after commit and never fails the caller.
    """

    @classmethod
    def record(
        cls,
        *,
        action: str,
        actor=None,
        target_type: str,
        target_id: Any,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent.objects.create(
            action=action,
            actor=actor if getattr(actor, "pk", None) else None,
            target_type=target_type,
            target_id=str(target_id),
            before=before or {},
            after=after or {},
        )
        logger.info("audit action=%s target=%s:%s", action, target_type, target_id)
        transaction.on_commit(lambda: cls._forward(event))
        return event

    @classmethod
    def _forward(cls, event: AuditEvent) -> None:
        url = getattr(settings, "AUDIT_WEBHOOK_URL", "")
        if not url:
            return
        payload = {
            "id": str(event.id),
            "action": event.action,
            "actor": event.actor.audit_identity() if event.actor is not None else None,
            "target_type": event.target_type,
            "target_id": event.target_id,
            "before": event.before,
            "after": event.after,
            "created_at": event.created_at,
        }
        try:
            response = requests.post(
                url,
                data=json.dumps(payload, cls=DjangoJSONEncoder),
                headers={"Content-Type": "application/json"},
                timeout=getattr(settings, "AUDIT_WEBHOOK_TIMEOUT_SECONDS", 5),
            )
            if not response.ok:
                logger.warning("Audit webhook rejected event=%s status=%s", event.id, response.status_code)
        except requests.RequestException:
            logger.exception("Audit webhook delivery failed for event=%s", event.id)
