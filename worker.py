import time

from khopay.config import settings
from khopay.config.flags import flag
from khopay.db import SessionLocal
from khopay.logging_config import get_logger
from khopay.services.orchestrator import get_orchestrator
from khopay.services.reconciliation import run_reconciliation

logger = get_logger("khopay.worker")


def run_once(orchestrator=None) -> dict:
    """One sweep: expire overdue intents, then reconcile if enabled."""
    orchestrator = orchestrator or get_orchestrator()
    db = SessionLocal()
    try:
        if flag("FEATURE_WORKER_RECON", default=True):
            return run_reconciliation(db, orchestrator)
        expired = orchestrator.expire_due(db)
        return {"expired": len(expired)}
    finally:
        db.close()


def start_worker():
    logger.info("worker_started", interval_seconds=settings.EXPIRY_SWEEP_INTERVAL_SECONDS)

    while True:
        try:
            summary = run_once()
            if any(summary.values()):
                logger.info("worker_sweep_completed", **summary)
            time.sleep(settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
        except KeyboardInterrupt:
            logger.info("worker_stopping")
            break
        except Exception as e:
            logger.error("worker_sweep_failed", error=str(e), exc_info=e)
            time.sleep(5)


if __name__ == "__main__":
    start_worker()
