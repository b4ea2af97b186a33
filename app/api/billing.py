from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.billing import (
    BillingCycleRunRequest,
    BillingCycleRunResponse,
    InvoiceCancelRequest,
    InvoiceGenerateRequest,
    InvoiceGenerateResponse,
    InvoiceMarkPaidRequest,
    InvoiceRead,
    InvoiceRunRequest,
    InvoiceRunResponse,
    PhaseRunRead,
)
from app.schemas.collections import DunningLogEntryRead, DunningStatusRead
from app.schemas.common import ListResponse
from app.services import billing as billing_service
from app.services import billing_automation as billing_automation_service
from app.services import collections as collections_service
from app.services.billing_cycle import billing_cycle
from app.services.phase_locks import phase_locks

router = APIRouter(prefix="/billing")


# --- Billing cycle ---


@router.post(
    "/cycle-runs",
    response_model=BillingCycleRunResponse,
    tags=["billing-cycle"],
)
def run_billing_cycle(
    payload: BillingCycleRunRequest | None = None, db: Session = Depends(get_db)
):
    summary = billing_cycle.run(db, today=payload.today if payload else None)
    result = BillingCycleRunResponse.model_validate(summary)
    if not result.success:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=result.model_dump(mode="json", by_alias=True),
        )
    return result


@router.get(
    "/phase-runs",
    response_model=ListResponse[PhaseRunRead],
    tags=["billing-cycle"],
)
def list_phase_runs(
    phase: str | None = None,
    status: str | None = None,
    period: str | None = None,
    order_by: str = Query(default="started_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return phase_locks.list_response(
        db, phase, status, period, order_by, order_dir, limit, offset
    )


@router.get(
    "/phase-runs/stuck",
    response_model=list[PhaseRunRead],
    tags=["billing-cycle"],
)
def list_stuck_phase_runs(
    older_than_minutes: int = Query(default=60, ge=1),
    db: Session = Depends(get_db),
):
    return phase_locks.stuck(db, timedelta(minutes=older_than_minutes))


@router.post(
    "/phase-runs/{run_id}/reset",
    response_model=PhaseRunRead,
    tags=["billing-cycle"],
)
def reset_phase_run(
    run_id: str,
    note: str | None = Query(default=None, max_length=255),
    db: Session = Depends(get_db),
):
    return phase_locks.reset(db, run_id, note)


# --- Invoices ---


@router.post(
    "/entities/{entity_id}/invoices",
    response_model=InvoiceGenerateResponse,
    tags=["invoices"],
)
def generate_entity_invoice(
    entity_id: str,
    payload: InvoiceGenerateRequest,
    response: Response,
    db: Session = Depends(get_db),
):
    result = billing_automation_service.generate_for_entity(db, entity_id, payload.period)
    if not result.idempotent:
        response.status_code = status.HTTP_201_CREATED
    invoice = result.invoice
    return InvoiceGenerateResponse(
        invoice_id=invoice.id,
        entity_id=invoice.entity_id,
        period=invoice.period,
        amount=invoice.amount,
        status=invoice.status,
        idempotent=result.idempotent,
    )


@router.post(
    "/invoice-runs",
    response_model=InvoiceRunResponse,
    tags=["invoices"],
)
def run_invoice_batch(payload: InvoiceRunRequest, db: Session = Depends(get_db)):
    return billing_automation_service.run_monthly_billing(db, payload.period)


@router.get(
    "/invoices",
    response_model=ListResponse[InvoiceRead],
    tags=["invoices"],
)
def list_invoices(
    entity_id: str | None = None,
    status: str | None = None,
    period: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.invoices.list_response(
        db, entity_id, status, period, order_by, order_dir, limit, offset
    )


@router.get(
    "/invoices/{invoice_id}",
    response_model=InvoiceRead,
    tags=["invoices"],
)
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.get(db, invoice_id)


@router.post(
    "/invoices/{invoice_id}/mark-paid",
    response_model=InvoiceRead,
    tags=["invoices"],
)
def mark_invoice_paid(
    invoice_id: str,
    payload: InvoiceMarkPaidRequest | None = None,
    db: Session = Depends(get_db),
):
    return billing_service.invoices.mark_paid(
        db, invoice_id, payload.paid_at if payload else None
    )


@router.post(
    "/invoices/{invoice_id}/cancel",
    response_model=InvoiceRead,
    tags=["invoices"],
)
def cancel_invoice(
    invoice_id: str,
    payload: InvoiceCancelRequest | None = None,
    db: Session = Depends(get_db),
):
    return billing_service.invoices.cancel(
        db, invoice_id, payload.reason if payload else None
    )


# --- Dunning ---


@router.get(
    "/entities/{entity_id}/dunning-status",
    response_model=DunningStatusRead,
    tags=["dunning"],
)
def get_dunning_status(entity_id: str, db: Session = Depends(get_db)):
    return collections_service.dunning_evaluator.status(db, entity_id)


@router.get(
    "/entities/{entity_id}/dunning-log",
    response_model=ListResponse[DunningLogEntryRead],
    tags=["dunning"],
)
def list_dunning_log(
    entity_id: str,
    order_by: str = Query(default="executed_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return collections_service.dunning_log.list_response(
        db, entity_id, order_by, order_dir, limit, offset
    )
