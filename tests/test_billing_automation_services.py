"""Tests for recurring invoice generation."""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from fastapi import HTTPException

from app.models.billing import (
    BillingEntity,
    BillingEntityKind,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
)
from app.models.partner import Partner
from app.services import billing_automation as billing_automation_service
from app.services.billing import invoices as invoice_service
from app.services.billing.invoices import Invoices
from app.services.phase_runner import PhaseContext

TODAY = date(2026, 3, 10)
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
PERIOD = "2026-03"


def _ctx() -> PhaseContext:
    return PhaseContext(today=TODAY, now=NOW, period=PERIOD, correlation_id="test-run")


def _recurring(db_session, entity, period=PERIOD):
    return (
        db_session.query(Invoice)
        .filter(Invoice.entity_id == entity.id)
        .filter(Invoice.period == period)
        .filter(Invoice.kind == InvoiceKind.recurring)
        .all()
    )


def _second_entity(db_session, billing_day: int) -> BillingEntity:
    partner = Partner(name="Other Partner")
    db_session.add(partner)
    db_session.flush()
    entity = BillingEntity(
        kind=BillingEntityKind.partner, partner_id=partner.id, billing_day=billing_day
    )
    db_session.add(entity)
    db_session.commit()
    return entity


def _fixed(amount: str):
    return lambda db, entity, period: Decimal(amount)


def test_generate_twice_yields_one_invoice(db_session, billing_entity):
    first = invoice_service.generate_or_return(
        db_session, billing_entity, PERIOD, TODAY, _fixed("99.90")
    )
    db_session.commit()
    second = invoice_service.generate_or_return(
        db_session, billing_entity, PERIOD, TODAY, _fixed("120.00")
    )
    db_session.commit()

    assert first.idempotent is False
    assert second.idempotent is True
    assert second.invoice.id == first.invoice.id
    assert second.invoice.amount == Decimal("99.90")
    assert len(_recurring(db_session, billing_entity)) == 1


def test_generated_invoice_fields(db_session, billing_entity):
    result = invoice_service.generate_or_return(
        db_session, billing_entity, PERIOD, TODAY, _fixed("50"), correlation_id="abc"
    )
    invoice = result.invoice

    assert invoice.status == InvoiceStatus.pending
    assert invoice.due_date == TODAY + timedelta(days=billing_entity.grace_days)
    assert invoice.invoice_number.startswith(f"INV-{PERIOD}-")
    assert invoice.correlation_id == "abc"
    assert invoice.partner_id == billing_entity.partner_id


def test_zero_amount_invoice_is_settled(db_session, billing_entity):
    result = invoice_service.generate_or_return(
        db_session, billing_entity, PERIOD, TODAY, _fixed("0")
    )
    assert result.invoice.status == InvoiceStatus.paid
    assert result.invoice.paid_at is not None


def test_canceled_invoice_does_not_block_regeneration(db_session, billing_entity):
    first = invoice_service.generate_or_return(
        db_session, billing_entity, PERIOD, TODAY, _fixed("10")
    )
    db_session.commit()
    invoice_service.cancel(db_session, str(first.invoice.id), "wrong amount")

    second = invoice_service.generate_or_return(
        db_session, billing_entity, PERIOD, TODAY, _fixed("12")
    )
    db_session.commit()

    assert second.idempotent is False
    assert second.invoice.id != first.invoice.id
    assert len(_recurring(db_session, billing_entity)) == 2


def test_concurrent_insert_returns_winner(db_session, billing_entity, monkeypatch):
    winner = invoice_service.generate_or_return(
        db_session, billing_entity, PERIOD, TODAY, _fixed("10")
    )
    db_session.commit()

    original = Invoices.find_recurring
    calls = {"count": 0}

    def _stale_then_real(db, entity_id, period):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return original(db, entity_id, period)

    monkeypatch.setattr(Invoices, "find_recurring", staticmethod(_stale_then_real))

    result = invoice_service.generate_or_return(
        db_session, billing_entity, PERIOD, TODAY, _fixed("10")
    )
    db_session.commit()

    assert result.idempotent is True
    assert result.invoice.id == winner.invoice.id
    assert len(_recurring(db_session, billing_entity)) == 1


def test_default_amount_sums_tenant_subscriptions(db_session, billing_entity, subscription):
    amount = billing_automation_service.resolve_billable_amount(
        db_session, billing_entity, PERIOD
    )
    assert amount == Decimal("149.90")

    subscription.monthly_amount = Decimal("99.00")
    db_session.commit()
    amount = billing_automation_service.resolve_billable_amount(
        db_session, billing_entity, PERIOD
    )
    assert amount == Decimal("99.00")


def test_phase_only_bills_entities_due_today(db_session, billing_entity):
    other = _second_entity(db_session, billing_day=TODAY.day + 1)

    outcome = billing_automation_service.run_invoice_generation(
        db_session, _ctx(), amount_resolver=_fixed("30")
    )

    assert outcome.counts["entities_due"] == 1
    assert outcome.counts["invoices_created"] == 1
    assert outcome.errors == []
    assert len(_recurring(db_session, billing_entity)) == 1
    assert _recurring(db_session, other) == []


def test_phase_rerun_is_idempotent(db_session, billing_entity):
    billing_automation_service.run_invoice_generation(
        db_session, _ctx(), amount_resolver=_fixed("30")
    )
    outcome = billing_automation_service.run_invoice_generation(
        db_session, _ctx(), amount_resolver=_fixed("30")
    )

    assert outcome.counts["invoices_created"] == 0
    assert outcome.counts["invoices_existing"] == 1
    assert len(_recurring(db_session, billing_entity)) == 1


def test_phase_isolates_entity_failures(db_session, billing_entity):
    broken = _second_entity(db_session, billing_day=TODAY.day)

    def _resolver(db, entity, period):
        if entity.id == broken.id:
            raise RuntimeError("rating service unavailable")
        return Decimal("25.00")

    outcome = billing_automation_service.run_invoice_generation(
        db_session, _ctx(), amount_resolver=_resolver
    )

    assert outcome.failed
    assert outcome.errors == [
        {"entity": str(broken.id), "error": "rating service unavailable"}
    ]
    assert outcome.counts["invoices_created"] == 1
    assert len(_recurring(db_session, billing_entity)) == 1


def test_monthly_billing_ignores_billing_day(db_session, billing_entity):
    other = _second_entity(db_session, billing_day=28)

    summary = billing_automation_service.run_monthly_billing(
        db_session, PERIOD, today=TODAY, amount_resolver=_fixed("40")
    )

    assert summary["processed"] == 2
    assert summary["invoices_created"] == 2
    assert summary["invoices_existing"] == 0
    assert len(_recurring(db_session, other)) == 1


def test_generate_for_entity_validates_entity(db_session, billing_entity):
    with pytest.raises(HTTPException) as missing:
        billing_automation_service.generate_for_entity(
            db_session, "00000000-0000-0000-0000-000000000000", PERIOD
        )
    assert missing.value.status_code == 404

    billing_entity.is_active = False
    db_session.commit()
    with pytest.raises(HTTPException) as inactive:
        billing_automation_service.generate_for_entity(
            db_session, str(billing_entity.id), PERIOD
        )
    assert inactive.value.status_code == 400
