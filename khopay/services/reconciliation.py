"""
Reconciliation: poll providers for intents still waiting on a callback and
feed the answers through the orchestrator (cause verify-poll).
"""
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import AdapterConfigError, PaymentError, ProviderError, ProviderUnavailable
from ..logging_config import get_logger
from ..models import GATEWAY_METHODS, IntentStatus, PaymentIntent
from ..psp.adapter import Disposition
from ..timeutil import as_utc, utcnow
from .orchestrator import PaymentOrchestrator, get_orchestrator

logger = get_logger(__name__)


def run_reconciliation(
    db: Session,
    orchestrator: Optional[PaymentOrchestrator] = None,
    now: Optional[datetime] = None,
    min_age_minutes: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, int]:
    """
    Expire overdue intents, then verify-poll redirected/awaiting intents older
    than min_age_minutes. Provider failures are counted, never raised.
    """
    orchestrator = orchestrator or get_orchestrator()
    now = as_utc(now) if now else utcnow()
    min_age = settings.RECON_MIN_AGE_MINUTES if min_age_minutes is None else min_age_minutes
    limit = limit or settings.RECON_BATCH_SIZE

    expired = orchestrator.expire_due(db, now=now)

    intent_ids = [
        row.id
        for row in db.query(PaymentIntent.id)
        .filter(
            PaymentIntent.method.in_(sorted(GATEWAY_METHODS)),
            PaymentIntent.status.in_([IntentStatus.REDIRECTED.value, IntentStatus.AWAITING_CALLBACK.value]),
            PaymentIntent.created_at <= now - timedelta(minutes=min_age),
        )
        .order_by(PaymentIntent.created_at.asc())
        .limit(limit)
        .all()
    ]

    summary = {"expired": len(expired), "checked": 0, "applied": 0, "unchanged": 0, "errors": 0}
    for intent_id in intent_ids:
        summary["checked"] += 1
        try:
            result = orchestrator.verify(db, intent_id)
        except (AdapterConfigError, ProviderUnavailable, ProviderError) as e:
            summary["errors"] += 1
            logger.warning("recon_verify_failed", intent_id=intent_id, error_type=type(e).__name__, error=str(e))
            continue
        except PaymentError as e:
            summary["errors"] += 1
            logger.warning("recon_verify_rejected", intent_id=intent_id, code=e.code, error=e.message)
            continue

        if result.applied:
            summary["applied"] += 1
        elif result.disposition in (Disposition.NO_CHANGE, Disposition.DUPLICATE):
            summary["unchanged"] += 1

    logger.info("recon_completed", **summary)
    return summary
