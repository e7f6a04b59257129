from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from khopay.deps import OPERATOR_ROLES, get_db, get_orchestrator, require_roles
from khopay.services.orchestrator import PaymentOrchestrator
from khopay.services.reconciliation import run_reconciliation

router = APIRouter(prefix="/v1/recon", tags=["Reconciliation"])


@router.post("/run", dependencies=[Depends(require_roles(OPERATOR_ROLES))])
def run_recon(
    min_age_minutes: Optional[int] = Query(None, ge=0, le=24 * 60),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Expire overdue intents and verify-poll the ones still awaiting a callback."""
    return run_reconciliation(db, orchestrator, min_age_minutes=min_age_minutes, limit=limit)
