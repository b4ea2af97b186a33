"""Per-(job, phase, period) locks backed by the ``billing_phase_runs`` table.

Mutual exclusion comes from the partial unique index on live rows (running or
success). A runner first looks for a success row and skips if one exists,
then inserts a running row; losing the insert race means another runner holds
or already finished the lock. Completion only touches the row carrying the
runner's own correlation id.

Crashed runners leave their row ``running``. Nothing expires it
automatically: ``stuck`` lists such rows for monitoring and ``reset`` lets an
operator fail one so the next invocation can retry.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.billing_job import PhaseRun, PhaseRunStatus
from app.services.common import apply_ordering, apply_pagination, get_or_404, validate_enum
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


class PhaseLocks(ListResponseMixin):
    @staticmethod
    def completed(db: Session, job_name: str, phase: str, period: str) -> bool:
        return (
            db.query(PhaseRun.id)
            .filter(PhaseRun.job_name == job_name)
            .filter(PhaseRun.phase == phase)
            .filter(PhaseRun.period == period)
            .filter(PhaseRun.status == PhaseRunStatus.success)
            .first()
            is not None
        )

    @staticmethod
    def acquire(
        db: Session,
        job_name: str,
        phase: str,
        period: str,
        correlation_id: str,
    ) -> bool:
        if PhaseLocks.completed(db, job_name, phase, period):
            logger.info(f"Phase {phase} already completed for {period}, skipping")
            return False

        run = PhaseRun(
            job_name=job_name,
            phase=phase,
            period=period,
            correlation_id=correlation_id,
            status=PhaseRunStatus.running,
            started_at=datetime.now(UTC),
        )
        try:
            db.add(run)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.info(
                f"Phase {phase} lock for {period} held by another runner: {exc.__class__.__name__}"
            )
            return False
        logger.info(f"Acquired phase lock {phase} for {period}")
        return True

    @staticmethod
    def complete(
        db: Session,
        job_name: str,
        phase: str,
        period: str,
        correlation_id: str,
        status: PhaseRunStatus,
        results: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        if status == PhaseRunStatus.running:
            raise ValueError("A phase cannot complete as running")
        updated = (
            db.query(PhaseRun)
            .filter(PhaseRun.job_name == job_name)
            .filter(PhaseRun.phase == phase)
            .filter(PhaseRun.period == period)
            .filter(PhaseRun.correlation_id == correlation_id)
            .filter(PhaseRun.status == PhaseRunStatus.running)
            .update(
                {
                    PhaseRun.status: status,
                    PhaseRun.finished_at: datetime.now(UTC),
                    PhaseRun.results: results,
                    PhaseRun.error: error,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if not updated:
            logger.warning(
                f"No running {phase} row for {period} owned by {correlation_id}; "
                "it may have been reset by an operator"
            )
        return bool(updated)

    @staticmethod
    def get(db: Session, run_id: str) -> PhaseRun:
        return get_or_404(db, PhaseRun, run_id, detail="Phase run not found")

    @staticmethod
    def list(
        db: Session,
        phase: str | None,
        status: str | None,
        period: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(PhaseRun)
        if phase:
            query = query.filter(PhaseRun.phase == phase)
        if status:
            query = query.filter(
                PhaseRun.status == validate_enum(status, PhaseRunStatus, "status")
            )
        if period:
            query = query.filter(PhaseRun.period == period)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"started_at": PhaseRun.started_at, "created_at": PhaseRun.created_at},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def stuck(db: Session, older_than: timedelta, now: datetime | None = None):
        threshold = (now or datetime.now(UTC)) - older_than
        return (
            db.query(PhaseRun)
            .filter(PhaseRun.status == PhaseRunStatus.running)
            .filter(PhaseRun.started_at < threshold)
            .order_by(PhaseRun.started_at.asc())
            .all()
        )

    @staticmethod
    def reset(db: Session, run_id: str, note: str | None = None) -> PhaseRun:
        """Operator action: fail a running row so the phase can be retried."""
        run = get_or_404(db, PhaseRun, run_id, detail="Phase run not found")
        if run.status != PhaseRunStatus.running:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot reset phase run with status {run.status.value}",
            )
        run.status = PhaseRunStatus.failed
        run.finished_at = datetime.now(UTC)
        run.error = note or "Reset by operator"
        db.commit()
        db.refresh(run)
        logger.warning(f"Phase run {run.id} ({run.phase} {run.period}) reset by operator")
        return run


phase_locks = PhaseLocks()
