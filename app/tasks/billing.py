import logging
import time
from datetime import date

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services.billing_cycle import billing_cycle

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.billing.run_billing_cycle")
def run_billing_cycle(today: str | None = None):
    """Run the billing cycle; ``today`` (ISO date) overrides the logical date."""
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        summary = billing_cycle.run(
            session, today=date.fromisoformat(today) if today else None
        )
        if not summary["success"]:
            raise RuntimeError(
                f"Billing cycle {summary['correlation_id']} failed: {summary['error']}"
            )
        return summary
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("billing_cycle", status, time.monotonic() - start)
