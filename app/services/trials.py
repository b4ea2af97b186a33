"""Trial expiry (cycle phase C).

Expired trials on a free plan become active; paid ones get a conversion
invoice and move to ``past_due`` until it is settled.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session, selectinload

from app.config import settings
from app.models.billing import (
    OPEN_INVOICE_STATUSES,
    BillingEntity,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
)
from app.models.catalog import Subscription, SubscriptionStatus
from app.services.billing import invoice_number
from app.services.billing.periods import billing_period
from app.services.common import round_money
from app.services.lifecycle import activate_subscription, transition_subscription
from app.services.phase_runner import PhaseContext, PhaseOutcome, fold_entities

logger = logging.getLogger(__name__)


def expired_trials(db: Session, now: datetime) -> list[Subscription]:
    return (
        db.query(Subscription)
        .options(selectinload(Subscription.plan), selectinload(Subscription.tenant))
        .filter(Subscription.status == SubscriptionStatus.trial)
        .filter(Subscription.trial_ends_at.is_not(None))
        .filter(Subscription.trial_ends_at <= now)
        .order_by(Subscription.trial_ends_at.asc())
        .all()
    )


def conversion_amount(subscription: Subscription) -> Decimal:
    plan = subscription.plan
    if plan is not None and plan.monthly_price:
        return round_money(plan.monthly_price)
    if subscription.monthly_amount:
        return round_money(subscription.monthly_amount)
    return Decimal("0.00")


def _open_conversion_invoice(db: Session, subscription: Subscription) -> Invoice | None:
    return (
        db.query(Invoice)
        .filter(Invoice.subscription_id == subscription.id)
        .filter(Invoice.kind == InvoiceKind.trial_conversion)
        .filter(Invoice.status.in_(OPEN_INVOICE_STATUSES))
        .first()
    )


def _create_conversion_invoice(
    db: Session,
    subscription: Subscription,
    amount: Decimal,
    ctx: PhaseContext,
) -> Invoice:
    plan = subscription.plan
    tenant = subscription.tenant
    entity = (
        db.query(BillingEntity)
        .filter(BillingEntity.tenant_id == subscription.tenant_id)
        .first()
    )
    period = billing_period(ctx.today)
    invoice = Invoice(
        entity_id=entity.id if entity else None,
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        partner_id=(plan.partner_id if plan else None) or (tenant.partner_id if tenant else None),
        plan_id=plan.id if plan else None,
        kind=InvoiceKind.trial_conversion,
        invoice_number=invoice_number(period),
        period=period,
        amount=amount,
        currency=settings.billing_currency,
        description=f"Subscription {plan.name if plan else 'plan'} - after trial period",
        due_date=ctx.today + timedelta(days=settings.trial_conversion_due_days),
        status=InvoiceStatus.pending,
        correlation_id=ctx.correlation_id,
    )
    db.add(invoice)
    db.flush()
    return invoice


def expire_trial(db: Session, subscription: Subscription, ctx: PhaseContext) -> list[str]:
    """Convert one expired trial. Safe to repeat after a partial failure."""
    plan = subscription.plan
    amount = conversion_amount(subscription)
    if (plan is not None and not plan.monthly_price) or amount <= Decimal("0.00"):
        activate_subscription(subscription, ctx.now, settings.free_plan_period_days)
        logger.info(f"Trial {subscription.id} converted to free plan")
        return ["trials_expired", "trials_activated"]

    counters = ["trials_expired"]
    if _open_conversion_invoice(db, subscription) is None:
        invoice = _create_conversion_invoice(db, subscription, amount, ctx)
        counters.append("charges_generated")
        logger.info(
            f"Trial {subscription.id} expired; invoice {invoice.invoice_number} for {amount}"
        )
    transition_subscription(subscription, SubscriptionStatus.past_due)
    return counters


def run_trial_expiry(db: Session, ctx: PhaseContext) -> PhaseOutcome:
    subscriptions = expired_trials(db, ctx.now)
    logger.info(f"Trial expiry: {len(subscriptions)} expired trials")
    return fold_entities(
        db,
        subscriptions,
        lambda session, subscription: expire_trial(session, subscription, ctx),
        ctx=ctx,
    )
