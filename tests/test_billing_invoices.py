"""Tests for invoice status changes."""

from datetime import UTC, date, datetime, timedelta

import pytest
from fastapi import HTTPException

from app.models.billing import InvoiceStatus
from app.models.catalog import DelinquencyStage, SubscriptionStatus
from app.services.billing import invoices as invoice_service

TODAY = date(2026, 3, 10)


def test_mark_overdue_only_flips_past_due_pending(db_session, billing_entity, invoice_factory):
    late = invoice_factory(entity=billing_entity, due_date=TODAY - timedelta(days=2))
    due_today = invoice_factory(entity=billing_entity, due_date=TODAY)
    paid = invoice_factory(
        entity=billing_entity,
        due_date=TODAY - timedelta(days=5),
        status=InvoiceStatus.paid,
    )

    assert invoice_service.mark_overdue(db_session, TODAY) == 1
    assert invoice_service.mark_overdue(db_session, TODAY) == 0
    db_session.commit()

    for invoice in (late, due_today, paid):
        db_session.refresh(invoice)
    assert late.status == InvoiceStatus.overdue
    assert due_today.status == InvoiceStatus.pending
    assert paid.status == InvoiceStatus.paid


def test_mark_paid_restores_past_due_subscription(
    db_session, billing_entity, subscription, invoice_factory
):
    subscription.status = SubscriptionStatus.past_due
    subscription.delinquency_stage = DelinquencyStage.partial
    db_session.commit()
    invoice = invoice_factory(
        entity=billing_entity,
        subscription=subscription,
        due_date=TODAY - timedelta(days=9),
        status=InvoiceStatus.overdue,
    )

    paid_at = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)
    result = invoice_service.mark_paid(db_session, str(invoice.id), paid_at)

    assert result.status == InvoiceStatus.paid
    assert result.paid_at is not None
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.active
    assert subscription.delinquency_stage == DelinquencyStage.none
    assert subscription.current_period_end is not None


def test_mark_paid_keeps_past_due_with_other_overdue_invoice(
    db_session, billing_entity, subscription, invoice_factory
):
    subscription.status = SubscriptionStatus.past_due
    db_session.commit()
    first = invoice_factory(
        subscription=subscription,
        due_date=TODAY - timedelta(days=40),
        status=InvoiceStatus.overdue,
    )
    invoice_factory(
        subscription=subscription,
        due_date=TODAY - timedelta(days=10),
        status=InvoiceStatus.overdue,
    )

    invoice_service.mark_paid(
        db_session, str(first.id), datetime(2026, 3, 10, 15, 0, tzinfo=UTC)
    )

    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.past_due


def test_mark_paid_rejects_settled_invoice(db_session, billing_entity, invoice_factory):
    invoice = invoice_factory(entity=billing_entity, status=InvoiceStatus.paid)

    with pytest.raises(HTTPException) as exc:
        invoice_service.mark_paid(db_session, str(invoice.id))
    assert exc.value.status_code == 409


def test_cancel_open_invoice(db_session, billing_entity, invoice_factory):
    invoice = invoice_factory(entity=billing_entity)

    canceled = invoice_service.cancel(db_session, str(invoice.id), "duplicate")

    assert canceled.status == InvoiceStatus.canceled
    assert canceled.canceled_at is not None
    with pytest.raises(HTTPException) as exc:
        invoice_service.cancel(db_session, str(invoice.id))
    assert exc.value.status_code == 409


def test_get_unknown_invoice(db_session):
    with pytest.raises(HTTPException) as exc:
        invoice_service.get(db_session, "not-a-uuid")
    assert exc.value.status_code == 400
