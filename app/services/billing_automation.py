"""Recurring invoice generation (cycle phase A) and manual batch runs."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.billing import BillingEntity
from app.models.catalog import Subscription, SubscriptionStatus
from app.models.partner import Tenant
from app.services.billing import GenerationResult, invoices
from app.services.billing.invoices import AmountResolver
from app.services.billing.periods import billing_day_matches, resolve_today
from app.services.common import get_or_404, round_money
from app.services.phase_runner import PhaseContext, PhaseOutcome, fold_entities

logger = logging.getLogger(__name__)

BILLABLE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.past_due)


def resolve_billable_amount(db: Session, entity: BillingEntity, period: str) -> Decimal:
    """Sum of the monthly charges of the subscriptions an entity is billed for.

    A partner entity is billed for the subscriptions of all its tenants, a
    tenant entity for its own. The subscription's negotiated
    ``monthly_amount`` wins over the plan price. Usage-based rating is not
    modelled here; pass another ``amount_resolver`` to the generator to plug
    one in.
    """
    query = db.query(Subscription).filter(
        Subscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES)
    )
    if entity.tenant_id is not None:
        query = query.filter(Subscription.tenant_id == entity.tenant_id)
    else:
        query = query.join(Tenant, Tenant.id == Subscription.tenant_id).filter(
            Tenant.partner_id == entity.partner_id
        )
    total = Decimal("0.00")
    for subscription in query.all():
        if subscription.monthly_amount is not None:
            total += subscription.monthly_amount
        elif subscription.plan is not None and subscription.plan.monthly_price:
            total += subscription.plan.monthly_price
    return round_money(total)


def _active_entities(db: Session) -> list[BillingEntity]:
    return (
        db.query(BillingEntity)
        .filter(BillingEntity.is_active.is_(True))
        .order_by(BillingEntity.created_at.asc())
        .all()
    )


def _generation_handler(
    period: str,
    today: date,
    correlation_id: str | None,
    amount_resolver: AmountResolver,
):
    def handle(db: Session, entity: BillingEntity) -> str:
        result = invoices.generate_or_return(
            db, entity, period, today, amount_resolver, correlation_id=correlation_id
        )
        return "invoices_existing" if result.idempotent else "invoices_created"

    return handle


def run_invoice_generation(
    db: Session,
    ctx: PhaseContext,
    amount_resolver: AmountResolver | None = None,
) -> PhaseOutcome:
    """Generate the period invoice for every entity whose billing day is today."""
    entities = [
        entity
        for entity in _active_entities(db)
        if billing_day_matches(entity.billing_day, ctx.today)
    ]
    outcome = PhaseOutcome()
    outcome.add("entities_due", len(entities))
    logger.info(f"Invoice generation: {len(entities)} entities due on {ctx.today}")
    return fold_entities(
        db,
        entities,
        _generation_handler(
            ctx.period,
            ctx.today,
            ctx.correlation_id,
            amount_resolver or resolve_billable_amount,
        ),
        ctx=ctx,
        outcome=outcome,
    )


def run_monthly_billing(
    db: Session,
    period: str,
    today: date | None = None,
    correlation_id: str | None = None,
    amount_resolver: AmountResolver | None = None,
) -> dict:
    """Generate ``period`` invoices for all active entities regardless of billing day."""
    today = today or resolve_today()
    entities = _active_entities(db)
    outcome = fold_entities(
        db,
        entities,
        _generation_handler(
            period, today, correlation_id, amount_resolver or resolve_billable_amount
        ),
    )
    summary = {
        "period": period,
        "processed": len(entities),
        "invoices_created": outcome.counts["invoices_created"],
        "invoices_existing": outcome.counts["invoices_existing"],
        "errors": outcome.errors,
    }
    logger.info(
        f"Monthly billing {period}: {summary['invoices_created']} created, "
        f"{summary['invoices_existing']} existing, {len(outcome.errors)} errors"
    )
    return summary


def generate_for_entity(
    db: Session,
    entity_id: str,
    period: str,
    today: date | None = None,
    amount_resolver: AmountResolver | None = None,
) -> GenerationResult:
    entity = get_or_404(db, BillingEntity, entity_id, detail="Billing entity not found")
    if not entity.is_active:
        raise HTTPException(status_code=400, detail="Billing entity is inactive")
    result = invoices.generate_or_return(
        db,
        entity,
        period,
        today or resolve_today(),
        amount_resolver or resolve_billable_amount,
    )
    db.commit()
    db.refresh(result.invoice)
    return result
