# payout/services/errors.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

from django.db import OperationalError

logger = logging.getLogger(__name__)


class PayoutError(Exception):
    """Base exception for payout service errors."""


class PayoutValidationError(PayoutError):
    """Raised when input is rejected before any settlement is written."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class StatusConflictError(PayoutError):
    """Raised when a transition conflicts with the current state. Nothing is changed."""

    def __init__(self, conflicts: Dict[str, str]):
        super().__init__("; ".join(f"{key}: {reason}" for key, reason in conflicts.items()))
        self.conflicts = conflicts


class BatchCreationError(PayoutError):
    """Raised when a settlement could not be written. No batch or batch item remains."""


class PayoutStoreError(PayoutError):
    """Raised when the database is unavailable or a statement timed out."""


@contextmanager
def store_guard(operation: str):
    try:
        yield
    except OperationalError as exc:
        logger.exception("Store failure during %s", operation)
        raise PayoutStoreError(f"{operation} failed: store unavailable or timed out") from exc
