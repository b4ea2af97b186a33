import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Enum, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class BillingPhase(enum.Enum):
    invoice_generation = "A_invoice_gen"
    dunning = "B_dunning"
    trials = "C_trials"
    delinquency = "D_delinquency"


class PhaseRunStatus(enum.Enum):
    running = "running"
    success = "success"
    failed = "failed"


class JobRunStatus(enum.Enum):
    success = "success"
    partial = "partial"
    failed = "failed"


class PhaseRun(Base):
    """Lock and audit row for one phase of the billing cycle.

    The partial unique index allows a single live row (running or success)
    per (job_name, phase, period); failed rows accumulate so a later
    invocation can retry.
    """

    __tablename__ = "billing_phase_runs"
    __table_args__ = (
        Index(
            "ix_billing_phase_runs_live_unique",
            "job_name",
            "phase",
            "period",
            unique=True,
            postgresql_where=text("status IN ('running', 'success')"),
            sqlite_where=text("status IN ('running', 'success')"),
        ),
        Index("ix_billing_phase_runs_correlation_id", "correlation_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_name: Mapped[str] = mapped_column(String(80), nullable=False)
    phase: Mapped[str] = mapped_column(String(40), nullable=False)
    period: Mapped[str] = mapped_column(String(10), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[PhaseRunStatus] = mapped_column(
        Enum(PhaseRunStatus), default=PhaseRunStatus.running, nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    results: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class JobRunLog(Base):
    """One row per orchestrator invocation."""

    __tablename__ = "billing_job_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_name: Mapped[str] = mapped_column(String(80), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[JobRunStatus] = mapped_column(Enum(JobRunStatus), nullable=False)
    results: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
