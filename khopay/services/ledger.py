"""
Ledger store: append-only record of payment intent transitions.

Rows are only ever inserted. Updates and deletes are refused by the ORM
hooks on LedgerEntry, so callers cannot rewrite history through the session.

The orchestrator decides transitions with a compare-and-set on
payment_intents.status, and stages the matching row here in the same
transaction. latest_status() therefore always agrees with the intent row; it
exists for audits and operator tooling, not for deciding the next transition.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import LedgerEntry, PaymentIntent
from ..timeutil import as_utc, utcnow


def append(
    db: Session,
    intent_id: str,
    from_status: Optional[str],
    to_status: str,
    cause: str,
    anomaly: Optional[str] = None,
    provider_txn_id: Optional[str] = None,
    detail: Optional[Dict[str, Any]] = None,
    applied_at: Optional[datetime] = None,
) -> LedgerEntry:
    """Stage a ledger row in the caller's transaction. The caller commits."""
    entry = LedgerEntry(
        intent_id=intent_id,
        from_status=from_status,
        to_status=to_status,
        cause=cause,
        anomaly=anomaly,
        provider_txn_id=provider_txn_id,
        detail=detail,
        applied_at=applied_at or utcnow(),
    )
    db.add(entry)
    db.flush()
    return entry


def entries_for(db: Session, intent_id: str) -> List[LedgerEntry]:
    """All entries for an intent, oldest first."""
    return (
        db.query(LedgerEntry)
        .filter(LedgerEntry.intent_id == intent_id)
        .order_by(LedgerEntry.applied_at.asc(), LedgerEntry.id.asc())
        .all()
    )


def latest_status(db: Session, intent_id: str) -> Optional[str]:
    """Status after the most recent effective transition (anomalies are ignored)."""
    entry = (
        db.query(LedgerEntry)
        .filter(LedgerEntry.intent_id == intent_id, LedgerEntry.anomaly.is_(None))
        .order_by(LedgerEntry.applied_at.desc(), LedgerEntry.id.desc())
        .first()
    )
    return entry.to_status if entry else None


def history_for_order(db: Session, order_id: str) -> List[LedgerEntry]:
    return (
        db.query(LedgerEntry)
        .join(PaymentIntent, PaymentIntent.id == LedgerEntry.intent_id)
        .filter(PaymentIntent.order_id == order_id)
        .order_by(LedgerEntry.applied_at.asc(), LedgerEntry.id.asc())
        .all()
    )


def anomalies(db: Session, since: Optional[datetime] = None, limit: int = 100) -> List[LedgerEntry]:
    """Recorded anomalies, newest first."""
    q = db.query(LedgerEntry).filter(LedgerEntry.anomaly.isnot(None))
    if since is not None:
        q = q.filter(LedgerEntry.applied_at >= as_utc(since))
    return q.order_by(LedgerEntry.applied_at.desc(), LedgerEntry.id.desc()).limit(limit).all()
