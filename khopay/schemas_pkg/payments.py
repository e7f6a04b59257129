from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PaymentCreateRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=64)
    amount: int               # VND
    method: str
    return_url: Optional[str] = None
    locale: Optional[str] = None


class PaymentCreateResponse(BaseModel):
    intent_id: str
    order_id: str
    method: str
    amount: int
    currency: str
    status: str
    provider_ref: Optional[str] = None

    # Redirect target (gateway methods only)
    redirect_url: Optional[str] = None
    qr_payload: Optional[str] = None
    deeplink: Optional[str] = None

    expires_at: datetime


class PaymentIntentOut(BaseModel):
    id: str
    order_id: str
    amount: int
    currency: str
    method: str
    status: str
    provider_ref: Optional[str] = None
    provider_txn_id: Optional[str] = None
    redirect_url: Optional[str] = None
    qr_payload: Optional[str] = None
    deeplink: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True
    }


class VerifyResponse(BaseModel):
    intent_id: str
    order_id: str
    method: str
    status: str
    resolved_at: Optional[datetime] = None
    refreshed: bool = False


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ConfirmOfflineRequest(BaseModel):
    amount: int


class LedgerEntryOut(BaseModel):
    id: int
    intent_id: str
    from_status: Optional[str] = None
    to_status: str
    cause: str
    anomaly: Optional[str] = None
    provider_txn_id: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    applied_at: datetime

    model_config = {
        "from_attributes": True
    }


class LedgerResponse(BaseModel):
    entries: List[LedgerEntryOut]


class ExpireSweepResponse(BaseModel):
    expired: List[str]
    count: int


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0)     # VND; omitted refunds the remainder
    reason: Optional[str] = Field(None, max_length=255)


class RefundOut(BaseModel):
    id: str
    intent_id: str
    amount: int
    status: str
    refund_ref: Optional[str] = None
    provider_refund_id: Optional[str] = None
    reason: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True
    }
