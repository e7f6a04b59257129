import json
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import SessionLocal
from ..exceptions import AlreadyTerminal, SignatureInvalid, UnknownIntent
from ..logging_config import get_logger
from ..models import LedgerCause, WebhookEvent
from ..psp.adapter import Disposition
from ..psp.dispatcher import PSPDispatcher
from ..timeutil import utcnow
from .orchestrator import PaymentOrchestrator, get_orchestrator

logger = get_logger(__name__)

# Never persisted with the raw event
_REDACTED_HEADERS = {"authorization", "cookie"}


def log_webhook(provider: str, headers: dict, payload: Union[bytes, str], db: Session = None) -> Optional[WebhookEvent]:
    """
    Log a raw webhook event to the database.
    Returns the WebhookEvent object, or None if it could not be stored.
    """
    close_db = False
    if not db:
        db = SessionLocal()
        close_db = True

    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")

    try:
        event = WebhookEvent(
            provider=provider,
            headers={k: v for k, v in (headers or {}).items() if k.lower() not in _REDACTED_HEADERS},
            payload=payload,
            status="received",
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("webhook_log_failed", provider=provider, error=str(e))
        return None
    finally:
        if close_db:
            db.close()


def update_webhook_status(
    event_id: int,
    status: str,
    disposition: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = None,
):
    """
    Update the status of a webhook event.
    """
    close_db = False
    if not db:
        db = SessionLocal()
        close_db = True

    try:
        event = db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()
        if event:
            event.status = status
            event.disposition = disposition
            event.processed_at = utcnow()
            if error:
                event.error = error
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("webhook_status_update_failed", event_id=event_id, error=str(e))
    finally:
        if close_db:
            db.close()


def process_callback(
    db: Session,
    provider: str,
    payload: Union[bytes, str, Dict[str, Any]],
    headers: Optional[dict] = None,
    orchestrator: Optional[PaymentOrchestrator] = None,
) -> Tuple[Dict[str, Any], Disposition]:
    """
    Log, parse and apply one inbound provider callback.

    Domain rejections become a disposition and are acknowledged. Once the raw
    event is stored, an apply failure marks it failed and is still
    acknowledged; the verify-poll sweep recovers the intent. Only a failure to
    store the event propagates, so the provider retries delivery.
    """
    orchestrator = orchestrator or get_orchestrator()
    adapter = PSPDispatcher.get_adapter(provider)

    raw = payload if isinstance(payload, (bytes, str)) else json.dumps(payload, default=str)
    event = log_webhook(provider, headers or {}, raw, db)

    outcome = adapter.parse_callback(payload)
    try:
        result = orchestrator.apply_outcome(db, outcome, LedgerCause.CALLBACK.value)
        disposition, status = result.disposition, "processed"
    except SignatureInvalid:
        disposition, status = Disposition.INVALID_SIGNATURE, "rejected"
    except UnknownIntent:
        disposition, status = Disposition.UNKNOWN_INTENT, "rejected"
    except AlreadyTerminal:
        disposition, status = Disposition.DUPLICATE, "processed"
    except Exception as e:
        logger.error("webhook_processing_failed", provider=provider, exc_info=e)
        if event is None:
            raise
        event_id = event.id
        db.rollback()
        update_webhook_status(event_id, "failed", error=f"{type(e).__name__}: {e}", db=db)
        return adapter.acknowledge(Disposition.NO_CHANGE), Disposition.NO_CHANGE

    if event:
        update_webhook_status(event.id, status, disposition=disposition.value, db=db)

    logger.info(
        "webhook_processed",
        provider=provider,
        disposition=disposition.value,
        provider_ref=outcome.provider_ref,
        result=outcome.result.value,
    )
    return adapter.acknowledge(disposition), disposition
