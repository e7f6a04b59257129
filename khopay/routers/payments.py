"""
Payment endpoints for POS staff:
- POST /v1/payments                      create (or reuse) an intent and build its redirect/QR target
- GET  /v1/payments/verify               current status by order + method, optional provider poll
- GET  /v1/payments/{intent_id}          intent detail, ledger, cancel, offline confirmation
- GET  /v1/payments/return/{provider}    browser return from the gateway (display only)
- POST /v1/payments/{intent_id}/refund   operator refund of a succeeded payment
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from khopay.config import settings
from khopay.deps import OPERATOR_ROLES, STAFF_ROLES, get_db, get_orchestrator, require_roles
from khopay.exceptions import UnknownIntent
from khopay.logging_config import get_logger
from khopay.models import GATEWAY_METHODS, PaymentIntent
from khopay.psp.adapter import RedirectTarget
from khopay.psp.dispatcher import PSPDispatcher
from khopay.schemas_pkg import payments as schemas
from khopay.services import ledger
from khopay.services.orchestrator import PaymentOrchestrator

router = APIRouter(prefix="/v1/payments", tags=["Payments"])

logger = get_logger(__name__)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _create_response(intent: PaymentIntent, target: Optional[RedirectTarget]) -> schemas.PaymentCreateResponse:
    return schemas.PaymentCreateResponse(
        intent_id=intent.id,
        order_id=intent.order_id,
        method=intent.method,
        amount=intent.amount,
        currency=intent.currency,
        status=intent.status,
        provider_ref=target.provider_ref if target else intent.provider_ref,
        redirect_url=target.url if target else None,
        qr_payload=target.qr_payload if target else None,
        deeplink=target.deeplink if target else None,
        expires_at=intent.expires_at,
    )


@router.post("", response_model=schemas.PaymentCreateResponse)
def create_payment(
    payload: schemas.PaymentCreateRequest,
    request: Request,
    staff: dict = Depends(require_roles(STAFF_ROLES)),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Create a payment intent for an order and, for gateway methods, build the
    redirect/QR target. Repeating the request returns the same intent.
    """
    intent = orchestrator.create_intent(db, payload.order_id, payload.amount, payload.method)

    target = None
    if intent.method in GATEWAY_METHODS:
        intent, target = orchestrator.initiate(
            db,
            intent.id,
            return_url=payload.return_url,
            client_ip=_client_ip(request),
            locale=payload.locale,
        )

    logger.info("payment_requested", intent_id=intent.id, order_id=intent.order_id,
                method=intent.method, staff=staff.get("sub"))
    return _create_response(intent, target)


@router.get("/verify", response_model=schemas.VerifyResponse)
def verify_payment(
    order_id: str = Query(...),
    method: str = Query(...),
    refresh: bool = Query(False),
    staff: dict = Depends(require_roles(STAFF_ROLES)),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    intent = orchestrator.find_intent(db, order_id, method.lower())
    if not intent:
        raise UnknownIntent(f"No payment for order {order_id} via {method}", order_id=order_id)

    refreshed = False
    if refresh and not intent.is_terminal and intent.method in GATEWAY_METHODS:
        intent = orchestrator.verify(db, intent.id).intent
        refreshed = True

    return schemas.VerifyResponse(
        intent_id=intent.id,
        order_id=intent.order_id,
        method=intent.method,
        status=intent.status,
        resolved_at=intent.resolved_at,
        refreshed=refreshed,
    )


@router.get("/anomalies", response_model=List[schemas.LedgerEntryOut],
            dependencies=[Depends(require_roles(OPERATOR_ROLES))])
def list_anomalies(
    since: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return ledger.anomalies(db, since=since, limit=limit)


@router.post("/maintenance/expire", response_model=schemas.ExpireSweepResponse,
             dependencies=[Depends(require_roles(OPERATOR_ROLES))])
def run_expiry_sweep(
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    expired = orchestrator.expire_due(db)
    return {"expired": expired, "count": len(expired)}


@router.get("/orders/{order_id}/history", response_model=schemas.LedgerResponse,
            dependencies=[Depends(require_roles(STAFF_ROLES))])
def order_history(order_id: str, db: Session = Depends(get_db)):
    return {"entries": ledger.history_for_order(db, order_id)}


@router.get("/return/{provider}", include_in_schema=False)
def payment_return(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Browser lands here after paying. The parameters are verified for display
    only; settlement always comes from the IPN/callback or a verify-poll.
    """
    adapter = PSPDispatcher.get_adapter(provider)
    outcome = adapter.parse_return(dict(request.query_params))

    order_id = None
    if outcome.signature_valid and outcome.provider_ref:
        intent = (
            db.query(PaymentIntent)
            .filter(PaymentIntent.method == provider, PaymentIntent.provider_ref == outcome.provider_ref)
            .first()
        )
        order_id = intent.order_id if intent else None

    ok = outcome.signature_valid and outcome.is_success
    logger.info("payment_return", provider=provider, provider_ref=outcome.provider_ref,
                signature_valid=outcome.signature_valid, result=outcome.result.value)

    base = settings.FRONTEND_URL.rstrip("/")
    path = "/payment/success" if ok else "/payment/failed"
    query = urlencode({"order_id": order_id}) if order_id else ""
    return RedirectResponse(url=f"{base}{path}" + (f"?{query}" if query else ""), status_code=302)


@router.get("/{intent_id}", response_model=schemas.PaymentIntentOut,
            dependencies=[Depends(require_roles(STAFF_ROLES))])
def get_payment(
    intent_id: str,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_intent(db, intent_id)


@router.post("/{intent_id}/cancel", response_model=schemas.PaymentIntentOut)
def cancel_payment(
    intent_id: str,
    payload: Optional[schemas.CancelRequest] = None,
    staff: dict = Depends(require_roles(STAFF_ROLES)),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    reason = payload.reason if payload else None
    return orchestrator.cancel(db, intent_id, reason=reason, actor=staff.get("sub"))


@router.post("/{intent_id}/confirm", response_model=schemas.PaymentIntentOut)
def confirm_offline_payment(
    intent_id: str,
    payload: schemas.ConfirmOfflineRequest,
    staff: dict = Depends(require_roles(STAFF_ROLES)),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Cashier confirms a cash, card or bank transfer payment."""
    result = orchestrator.confirm_offline(db, intent_id, payload.amount, actor=staff.get("sub"))
    return result.intent


@router.get("/{intent_id}/ledger", response_model=schemas.LedgerResponse,
            dependencies=[Depends(require_roles(STAFF_ROLES))])
def intent_ledger(
    intent_id: str,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    intent = orchestrator.get_intent(db, intent_id)
    return {"entries": ledger.entries_for(db, intent.id)}


@router.post("/{intent_id}/refund", response_model=schemas.RefundOut)
def refund_payment(
    intent_id: str,
    payload: Optional[schemas.RefundRequest] = None,
    operator: dict = Depends(require_roles(OPERATOR_ROLES)),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Refund a succeeded payment, in full or in part. Gateway refunds are
    requested from the provider once; a pending answer is returned as-is.
    """
    return orchestrator.refund(
        db,
        intent_id,
        amount=payload.amount if payload else None,
        reason=payload.reason if payload else None,
        actor=operator.get("sub"),
    )


@router.get("/{intent_id}/refunds", response_model=List[schemas.RefundOut],
            dependencies=[Depends(require_roles(STAFF_ROLES))])
def list_refunds(
    intent_id: str,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.refunds_for(db, intent_id)
