"""
Gateway webhooks:
- GET|POST /v1/webhooks/vnpay    IPN (query string, or form body)
- POST     /v1/webhooks/momo     IPN (JSON body)
- POST     /v1/webhooks/zalopay  callback (JSON {data, mac, type})

Each raw payload is logged, verified by the adapter and applied by the
orchestrator. Every received event is acknowledged with HTTP 200 in the
provider's format, even when applying it failed; only a failure to store
the event returns 500 so the provider redelivers.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from khopay.deps import get_db, get_orchestrator
from khopay.logging_config import get_logger
from khopay.services.orchestrator import PaymentOrchestrator
from khopay.services.webhook_service import process_callback

router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])

logger = get_logger(__name__)


async def _handle(provider: str, raw: bytes, request: Request, db: Session, orchestrator: PaymentOrchestrator):
    try:
        ack, _ = await run_in_threadpool(
            process_callback, db, provider, raw, dict(request.headers), orchestrator
        )
    except Exception:
        logger.exception("webhook_failed", provider=provider)
        return JSONResponse(status_code=500, content={"detail": "Webhook processing failed"})
    return JSONResponse(status_code=200, content=ack)


@router.api_route("/vnpay", methods=["GET", "POST"])
async def webhook_vnpay(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    if request.method == "GET":
        raw = request.url.query.encode("utf-8")
    else:
        raw = await request.body()
    return await _handle("vnpay", raw, request, db, orchestrator)


@router.post("/momo")
async def webhook_momo(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    raw = await request.body()
    return await _handle("momo", raw, request, db, orchestrator)


@router.post("/zalopay")
async def webhook_zalopay(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    raw = await request.body()
    return await _handle("zalopay", raw, request, db, orchestrator)
