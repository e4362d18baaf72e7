from .batches import BatchOutcome, BatchResult, BatchStatusService, SettlementBatchCreator, generate_reference
from .errors import (
    BatchCreationError,
    PayoutError,
    PayoutStoreError,
    PayoutValidationError,
    StatusConflictError,
)
from .pending import DateRange, EligibleItem, PendingItemResolver, PendingResolution, VendorPayoutSummary
from .refunds import RefundDeductionHandler, RefundResult
from .rules import PayoutRuleResolver, compute_amount, money

__all__ = [
    "BatchCreationError",
    "BatchOutcome",
    "BatchResult",
    "BatchStatusService",
    "DateRange",
    "EligibleItem",
    "PayoutError",
    "PayoutRuleResolver",
    "PayoutStoreError",
    "PayoutValidationError",
    "PendingItemResolver",
    "PendingResolution",
    "RefundDeductionHandler",
    "RefundResult",
    "SettlementBatchCreator",
    "StatusConflictError",
    "VendorPayoutSummary",
    "compute_amount",
    "generate_reference",
    "money",
]
