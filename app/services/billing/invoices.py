"""Invoice services: idempotent generation and conditional status changes."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import (
    OPEN_INVOICE_STATUSES,
    BillingEntity,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
)
from app.models.catalog import SubscriptionStatus
from app.services.billing.periods import resolve_today
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_404,
    round_money,
    validate_enum,
)
from app.services.lifecycle import DEFAULT_PERIOD_DAYS, activate_subscription
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

AmountResolver = Callable[[Session, BillingEntity, str], Decimal]


@dataclass
class GenerationResult:
    invoice: Invoice
    idempotent: bool


def invoice_number(period: str) -> str:
    return f"INV-{period}-{uuid.uuid4().hex[:8].upper()}"


def overdue_query(db: Session, today: date):
    """Open invoices whose due date is already behind ``today``."""
    return (
        db.query(Invoice)
        .filter(Invoice.status.in_(OPEN_INVOICE_STATUSES))
        .filter(Invoice.due_date < today)
    )


class Invoices(ListResponseMixin):
    @staticmethod
    def find_recurring(db: Session, entity_id, period: str) -> Invoice | None:
        return (
            db.query(Invoice)
            .filter(Invoice.entity_id == coerce_uuid(entity_id))
            .filter(Invoice.period == period)
            .filter(Invoice.kind == InvoiceKind.recurring)
            .filter(Invoice.status != InvoiceStatus.canceled)
            .order_by(Invoice.created_at.asc())
            .first()
        )

    @staticmethod
    def generate_or_return(
        db: Session,
        entity: BillingEntity,
        period: str,
        today: date,
        amount_resolver: AmountResolver,
        correlation_id: str | None = None,
    ) -> GenerationResult:
        """Return the entity's recurring invoice for ``period``, creating it if absent.

        The existence check handles sequential re-runs; the partial unique
        index on (entity_id, period) catches a concurrent insert, in which
        case the winner's row is returned. The caller owns the commit.
        """
        existing = Invoices.find_recurring(db, entity.id, period)
        if existing:
            return GenerationResult(existing, True)

        amount = round_money(amount_resolver(db, entity, period))
        due_days = entity.grace_days if entity.grace_days else settings.billing_invoice_due_days
        invoice = Invoice(
            entity_id=entity.id,
            partner_id=entity.partner_id,
            tenant_id=entity.tenant_id,
            kind=InvoiceKind.recurring,
            invoice_number=invoice_number(period),
            period=period,
            amount=amount,
            currency=settings.billing_currency,
            description=f"Recurring charge {period}",
            due_date=today + timedelta(days=due_days),
            status=InvoiceStatus.pending,
            correlation_id=correlation_id,
        )
        if amount <= Decimal("0.00"):
            invoice.status = InvoiceStatus.paid
            invoice.paid_at = datetime.now(UTC)

        nested = db.begin_nested()
        try:
            db.add(invoice)
            db.flush()
            nested.commit()
        except IntegrityError:
            nested.rollback()
            existing = Invoices.find_recurring(db, entity.id, period)
            if existing is None:
                raise
            logger.info(f"Concurrent invoice for entity {entity.id} {period} won the insert")
            return GenerationResult(existing, True)
        logger.info(
            f"Created invoice {invoice.invoice_number} for entity {entity.id}: {amount}",
            extra={"entity_id": str(entity.id), "period": period},
        )
        return GenerationResult(invoice, False)

    @staticmethod
    def mark_overdue(
        db: Session,
        today: date,
        entity_id=None,
        subscription_id=None,
    ) -> int:
        """Flip pending invoices past their due date to overdue.

        Conditioned on ``status = pending`` so repeated calls are no-ops.
        """
        query = (
            db.query(Invoice)
            .filter(Invoice.status == InvoiceStatus.pending)
            .filter(Invoice.due_date < today)
        )
        if entity_id is not None:
            query = query.filter(Invoice.entity_id == coerce_uuid(entity_id))
        if subscription_id is not None:
            query = query.filter(Invoice.subscription_id == coerce_uuid(subscription_id))
        updated = query.update(
            {Invoice.status: InvoiceStatus.overdue}, synchronize_session=False
        )
        if updated:
            db.expire_all()
        return updated

    @staticmethod
    def mark_paid(db: Session, invoice_id: str, paid_at: datetime | None = None) -> Invoice:
        paid_at = paid_at or datetime.now(UTC)
        invoice = get_or_404(db, Invoice, invoice_id, detail="Invoice not found")
        updated = (
            db.query(Invoice)
            .filter(Invoice.id == invoice.id)
            .filter(Invoice.status.in_(OPEN_INVOICE_STATUSES))
            .update(
                {Invoice.status: InvoiceStatus.paid, Invoice.paid_at: paid_at},
                synchronize_session=False,
            )
        )
        if not updated:
            db.rollback()
            db.refresh(invoice)
            raise HTTPException(
                status_code=409,
                detail=f"Invoice is {invoice.status.value}",
            )
        db.refresh(invoice)
        Invoices._restore_subscription(db, invoice, paid_at)
        db.commit()
        db.refresh(invoice)
        logger.info(f"Invoice {invoice.id} marked paid")
        return invoice

    @staticmethod
    def _restore_subscription(db: Session, invoice: Invoice, paid_at: datetime) -> None:
        subscription = invoice.subscription
        if subscription is None or subscription.status != SubscriptionStatus.past_due:
            return
        today = resolve_today(paid_at)
        still_overdue = (
            overdue_query(db, today)
            .filter(Invoice.subscription_id == subscription.id)
            .filter(Invoice.id != invoice.id)
            .first()
        )
        if still_overdue:
            return
        activate_subscription(subscription, paid_at, DEFAULT_PERIOD_DAYS)

    @staticmethod
    def cancel(db: Session, invoice_id: str, reason: str | None = None) -> Invoice:
        invoice = get_or_404(db, Invoice, invoice_id, detail="Invoice not found")
        updated = (
            db.query(Invoice)
            .filter(Invoice.id == invoice.id)
            .filter(Invoice.status.in_(OPEN_INVOICE_STATUSES))
            .update(
                {
                    Invoice.status: InvoiceStatus.canceled,
                    Invoice.canceled_at: datetime.now(UTC),
                },
                synchronize_session=False,
            )
        )
        if not updated:
            db.rollback()
            db.refresh(invoice)
            raise HTTPException(
                status_code=409,
                detail=f"Invoice is {invoice.status.value}",
            )
        db.commit()
        db.refresh(invoice)
        logger.info(f"Invoice {invoice.id} canceled: {reason or 'no reason given'}")
        return invoice

    @staticmethod
    def get(db: Session, invoice_id: str) -> Invoice:
        return get_or_404(db, Invoice, invoice_id, detail="Invoice not found")

    @staticmethod
    def list(
        db: Session,
        entity_id: str | None,
        status: str | None,
        period: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(Invoice)
        if entity_id:
            query = query.filter(Invoice.entity_id == coerce_uuid(entity_id))
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "status")
            )
        if period:
            query = query.filter(Invoice.period == period)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Invoice.created_at,
                "due_date": Invoice.due_date,
                "status": Invoice.status,
            },
        )
        return apply_pagination(query, limit, offset).all()
