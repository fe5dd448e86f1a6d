"""
Celery tasks driving the dispatch worker.

Every task opens its own database session and runs the async worker in
a fresh event loop. Overlapping runs are safe: rows are claimed with a
conditional update, so a row is only ever sent by one task.
"""

import asyncio
from typing import Dict, Any

from ..core.logging import get_logger
from ..db.base import SessionLocal
from .celery_config import celery_app
from .dispatcher import DispatchWorker

logger = get_logger(__name__)


def _run(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery_app.task(bind=True, name="mailflow.email.tasks.dispatch_due_emails")
def dispatch_due_emails(self) -> Dict[str, Any]:
    """Send every ledger row whose scheduled time has passed."""
    logger.debug("Starting dispatch_due_emails task", extra={"task_id": self.request.id})
    db = SessionLocal()
    try:
        report = _run(DispatchWorker(db).run_once())
        return {"status": "ok", **report.as_dict()}
    except Exception:
        logger.exception("Task dispatch_due_emails failed")
        raise
    finally:
        db.close()


@celery_app.task(bind=True, name="mailflow.email.tasks.handoff_upcoming_emails")
def handoff_upcoming_emails(self) -> Dict[str, Any]:
    """Hand soon-due rows to the provider's scheduler when enabled."""
    db = SessionLocal()
    try:
        handed_off = _run(DispatchWorker(db).handoff_upcoming())
        if handed_off:
            logger.info(f"Handed off {handed_off} emails to provider", extra={"task_id": self.request.id})
        return {"status": "ok", "handed_off": handed_off}
    except Exception:
        logger.exception("Task handoff_upcoming_emails failed")
        raise
    finally:
        db.close()


@celery_app.task(name="mailflow.email.tasks.reconcile_provider_cancellations")
def reconcile_provider_cancellations() -> Dict[str, Any]:
    """Retry provider-side cancellation of locally cancelled rows."""
    db = SessionLocal()
    try:
        cancelled = _run(DispatchWorker(db).reconcile_provider_cancellations())
        if cancelled:
            logger.info(f"Cancelled {cancelled} scheduled sends at provider")
        return {"status": "ok", "cancelled": cancelled}
    except Exception:
        logger.exception("Task reconcile_provider_cancellations failed")
        raise
    finally:
        db.close()


@celery_app.task(name="mailflow.email.tasks.recover_stale_claims")
def recover_stale_claims() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        recovered = DispatchWorker(db).recover_stale_claims()
        return {"status": "ok", "recovered": recovered}
    finally:
        db.close()
