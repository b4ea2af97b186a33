"""Billing cycle orchestrator.

Runs invoice generation, dunning, trial expiry and the delinquency cascade in
that order. Every phase takes its own lock and commits its own work, so a
failing phase never undoes an earlier one and a duplicate invocation skips
whatever is running or already done.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import bind_correlation_id
from app.metrics import record_phase_outcome
from app.models.billing_job import BillingPhase, JobRunLog, JobRunStatus, PhaseRunStatus
from app.services.billing.periods import (
    billing_period,
    end_of_day,
    lock_window,
    resolve_today,
)
from app.services.billing_automation import run_invoice_generation
from app.services.collections import dunning_evaluator
from app.services.enforcement import run_delinquency_cascade
from app.services.phase_locks import phase_locks
from app.services.phase_runner import PhaseContext, PhaseOutcome, PhaseTimeout
from app.services.trials import run_trial_expiry

logger = logging.getLogger(__name__)

PhaseHandler = Callable[[Session, PhaseContext], PhaseOutcome]

PHASES: tuple[tuple[BillingPhase, PhaseHandler], ...] = (
    (BillingPhase.invoice_generation, run_invoice_generation),
    (BillingPhase.dunning, dunning_evaluator.run),
    (BillingPhase.trials, run_trial_expiry),
    (BillingPhase.delinquency, run_delinquency_cascade),
)


def _deadline() -> float | None:
    if settings.billing_phase_timeout_seconds <= 0:
        return None
    return time.monotonic() + settings.billing_phase_timeout_seconds


def phase_lock_key(phase: BillingPhase, today: date) -> str:
    """Lock key for ``phase`` on ``today``.

    Invoice generation only bills the entities whose billing day is today, so
    it is always locked per day; the invoice unique index already makes it
    idempotent per period.
    """
    if phase == BillingPhase.invoice_generation:
        return lock_window(today, "day")
    return lock_window(today, settings.billing_lock_window)


class BillingCycle:
    @staticmethod
    def run(
        db: Session,
        today: date | None = None,
        now: datetime | None = None,
        job_name: str | None = None,
        phases: Sequence[tuple[BillingPhase, PhaseHandler]] = PHASES,
    ) -> dict[str, Any]:
        """Run one invocation of the cycle and return its summary.

        ``success`` is False only when something outside the phase
        boundaries failed; phase failures are reported per phase. An
        overridden ``today`` without ``now`` runs as of the end of that
        day in the billing timezone.
        """
        job_name = job_name or settings.billing_job_name
        if now is None:
            now = end_of_day(today) if today else datetime.now(UTC)
        today = today or resolve_today(now)
        period = billing_period(today)
        correlation_id = uuid.uuid4().hex
        summary: dict[str, Any] = {
            "success": True,
            "correlation_id": correlation_id,
            "period": period,
            "today": today.isoformat(),
            "phases": [],
            "error": None,
        }
        with bind_correlation_id(correlation_id):
            logger.info(
                f"Billing cycle started for {today} ({settings.billing_lock_window} locks)",
                extra={"period": period},
            )
            try:
                for phase, handler in phases:
                    ctx = PhaseContext(
                        today=today,
                        now=now,
                        period=period,
                        correlation_id=correlation_id,
                    )
                    summary["phases"].append(
                        BillingCycle._run_phase(
                            db, job_name, phase, handler, ctx, phase_lock_key(phase, today)
                        )
                    )
            except Exception as exc:
                db.rollback()
                logger.exception("Billing cycle aborted")
                summary["success"] = False
                summary["error"] = str(exc)
            BillingCycle._write_job_log(db, job_name, summary)
            logger.info(
                f"Billing cycle finished: success={summary['success']}",
                extra={"period": period},
            )
        return summary

    @staticmethod
    def _run_phase(
        db: Session,
        job_name: str,
        phase: BillingPhase,
        handler: PhaseHandler,
        ctx: PhaseContext,
        lock_key: str,
    ) -> dict[str, Any]:
        log_extra = {"phase": phase.value, "period": lock_key}
        if not phase_locks.acquire(db, job_name, phase.value, lock_key, ctx.correlation_id):
            record_phase_outcome(phase.value, "skipped")
            return {
                "phase": phase.value,
                "skipped": True,
                "status": None,
                "counts": {},
                "errors": [],
                "error": None,
            }

        ctx.deadline = _deadline()
        error = None
        try:
            outcome = handler(db, ctx)
        except PhaseTimeout as exc:
            db.rollback()
            outcome = exc.outcome
            error = f"Phase timed out after {settings.billing_phase_timeout_seconds}s"
            logger.error(error, extra=log_extra)
        except Exception as exc:
            db.rollback()
            outcome = PhaseOutcome()
            error = str(exc) or exc.__class__.__name__
            logger.exception(f"Phase {phase.value} failed", extra=log_extra)

        if error is None and outcome.failed:
            error = f"{len(outcome.errors)} entities failed"
        status = PhaseRunStatus.failed if error else PhaseRunStatus.success
        results = outcome.as_results()
        phase_locks.complete(
            db,
            job_name,
            phase.value,
            lock_key,
            ctx.correlation_id,
            status,
            results=results,
            error=error,
        )
        record_phase_outcome(phase.value, status.value)
        logger.info(f"Phase {phase.value} {status.value}: {results['counts']}", extra=log_extra)

        errors = results["errors"]
        if error and not outcome.failed:
            errors = [{"entity": None, "error": error}]
        return {
            "phase": phase.value,
            "skipped": False,
            "status": status.value,
            "counts": results["counts"],
            "errors": errors,
            "error": error,
        }

    @staticmethod
    def _write_job_log(db: Session, job_name: str, summary: dict[str, Any]) -> None:
        if not summary["success"]:
            status = JobRunStatus.failed
        elif any(phase["status"] == PhaseRunStatus.failed.value for phase in summary["phases"]):
            status = JobRunStatus.partial
        else:
            status = JobRunStatus.success
        try:
            db.add(
                JobRunLog(
                    job_name=job_name,
                    correlation_id=summary["correlation_id"],
                    status=status,
                    results={"period": summary["period"], "phases": summary["phases"]},
                    error=summary["error"],
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to write billing job log")
            summary["success"] = False
            summary["error"] = summary["error"] or f"Job log write failed: {exc}"


billing_cycle = BillingCycle()
