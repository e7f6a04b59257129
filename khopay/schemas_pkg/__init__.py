# khopay/schemas_pkg/__init__.py

# Payment schemas
from .payments import (
    PaymentCreateRequest,
    PaymentCreateResponse,
    PaymentIntentOut,
    VerifyResponse,
    CancelRequest,
    ConfirmOfflineRequest,
    LedgerEntryOut,
    LedgerResponse,
    ExpireSweepResponse,
    RefundRequest,
    RefundOut,
)

__all__ = [
    "PaymentCreateRequest",
    "PaymentCreateResponse",
    "PaymentIntentOut",
    "VerifyResponse",
    "CancelRequest",
    "ConfirmOfflineRequest",
    "LedgerEntryOut",
    "LedgerResponse",
    "ExpireSweepResponse",
    "RefundRequest",
    "RefundOut",
]
