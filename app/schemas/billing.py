from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.billing import InvoiceKind, InvoiceStatus
from app.models.billing_job import PhaseRunStatus

PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID | None
    subscription_id: UUID | None
    tenant_id: UUID | None
    partner_id: UUID | None
    kind: InvoiceKind
    invoice_number: str | None
    period: str | None
    amount: Decimal
    currency: str
    description: str | None
    due_date: date
    status: InvoiceStatus
    paid_at: datetime | None
    canceled_at: datetime | None
    created_at: datetime


class InvoiceGenerateRequest(BaseModel):
    period: str = Field(pattern=PERIOD_PATTERN)


class InvoiceGenerateResponse(BaseModel):
    invoice_id: UUID
    entity_id: UUID
    period: str
    amount: Decimal
    status: InvoiceStatus
    idempotent: bool


class InvoiceRunRequest(BaseModel):
    period: str = Field(pattern=PERIOD_PATTERN)


class InvoiceRunResponse(BaseModel):
    period: str
    processed: int
    invoices_created: int
    invoices_existing: int
    errors: list[dict[str, Any]] = Field(default_factory=list)


class InvoiceMarkPaidRequest(BaseModel):
    paid_at: datetime | None = None


class InvoiceCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class BillingCycleRunRequest(BaseModel):
    today: date | None = None


class PhaseResult(BaseModel):
    phase: str
    skipped: bool = False
    status: PhaseRunStatus | None = None
    counts: dict[str, int] = Field(default_factory=dict)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None


class BillingCycleRunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    correlation_id: str = Field(alias="correlationId")
    period: str
    today: date
    phases: list[PhaseResult] = Field(default_factory=list)
    error: str | None = None


class PhaseRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_name: str
    phase: str
    period: str
    correlation_id: str
    status: PhaseRunStatus
    started_at: datetime
    finished_at: datetime | None
    results: dict[str, Any] | None
    error: str | None
