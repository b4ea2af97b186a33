"""Delinquency cascade (cycle phase D).

Overdue invoices are grouped per subscription and the oldest one decides the
stage against the owning partner's thresholds. Past the full-block threshold
the subscription is canceled and its tenant deactivated; below it the
subscription sits in ``past_due`` with a warning or partial stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from app.models.billing import Invoice
from app.models.catalog import DelinquencyStage, Subscription, SubscriptionStatus
from app.models.partner import DelinquencyConfig, Tenant
from app.services.billing import invoices, overdue_query
from app.services.billing.periods import days_overdue
from app.services.lifecycle import cancel_subscription, transition_subscription
from app.services.phase_runner import PhaseContext, PhaseOutcome, fold_entities

logger = logging.getLogger(__name__)

FULL_BLOCK_REASON = "delinquency_full_block"

_STAGE_COUNTERS = {
    DelinquencyStage.warning: "warnings_sent",
    DelinquencyStage.partial: "partial_blocks",
    DelinquencyStage.full: "full_blocks",
}


@dataclass(frozen=True)
class DelinquencyThresholds:
    warning_days: int = 1
    partial_block_days: int = 7
    full_block_days: int = 15

    @classmethod
    def from_config(cls, config: DelinquencyConfig | None) -> DelinquencyThresholds:
        if config is None:
            return cls()
        return cls(
            warning_days=config.warning_days,
            partial_block_days=config.partial_block_days,
            full_block_days=config.full_block_days,
        )

    def stage_for(self, overdue_days: int) -> DelinquencyStage:
        if overdue_days >= self.full_block_days:
            return DelinquencyStage.full
        if overdue_days >= self.partial_block_days:
            return DelinquencyStage.partial
        if overdue_days >= self.warning_days:
            return DelinquencyStage.warning
        return DelinquencyStage.none


@dataclass
class OverdueSubscription:
    subscription_id: object
    partner_id: object
    max_days_overdue: int
    invoice_count: int


def collect_overdue_subscriptions(db: Session, today) -> list[OverdueSubscription]:
    rows = (
        overdue_query(db, today)
        .filter(Invoice.subscription_id.is_not(None))
        .order_by(Invoice.due_date.asc())
        .all()
    )
    grouped: dict[object, OverdueSubscription] = {}
    for invoice in rows:
        overdue = days_overdue(invoice.due_date, today)
        item = grouped.get(invoice.subscription_id)
        if item is None:
            grouped[invoice.subscription_id] = OverdueSubscription(
                subscription_id=invoice.subscription_id,
                partner_id=invoice.partner_id,
                max_days_overdue=overdue,
                invoice_count=1,
            )
            continue
        item.max_days_overdue = max(item.max_days_overdue, overdue)
        item.invoice_count += 1
        if item.partner_id is None:
            item.partner_id = invoice.partner_id

    # Invoices without a partner fall back to the subscription's tenant.
    missing = [item.subscription_id for item in grouped.values() if item.partner_id is None]
    if missing:
        owners = dict(
            db.query(Subscription.id, Tenant.partner_id)
            .join(Tenant, Tenant.id == Subscription.tenant_id)
            .filter(Subscription.id.in_(missing))
            .all()
        )
        for subscription_id in missing:
            grouped[subscription_id].partner_id = owners.get(subscription_id)
    return list(grouped.values())


def apply_delinquency(
    db: Session,
    subscription: Subscription,
    stage: DelinquencyStage,
    now: datetime,
) -> bool:
    """Move a subscription to the state ``stage`` demands; False if already there."""
    if stage == DelinquencyStage.full:
        changed = cancel_subscription(db, subscription, now, FULL_BLOCK_REASON)
    elif subscription.status == SubscriptionStatus.canceled:
        return False
    else:
        changed = transition_subscription(subscription, SubscriptionStatus.past_due)
    if subscription.delinquency_stage != stage:
        subscription.delinquency_stage = stage
        changed = True
    return changed


def run_delinquency_cascade(db: Session, ctx: PhaseContext) -> PhaseOutcome:
    marked = invoices.mark_overdue(db, ctx.today)
    db.commit()
    overdue = collect_overdue_subscriptions(db, ctx.today)
    partner_ids = {item.partner_id for item in overdue if item.partner_id is not None}
    configs = {}
    if partner_ids:
        configs = {
            config.partner_id: config
            for config in db.query(DelinquencyConfig)
            .filter(DelinquencyConfig.partner_id.in_(partner_ids))
            .all()
        }

    outcome = PhaseOutcome()
    outcome.add("invoices_marked_overdue", marked)
    logger.info(f"Delinquency cascade: {len(overdue)} subscriptions with overdue invoices")

    def handle(session: Session, item: OverdueSubscription) -> list[str]:
        subscription = session.get(Subscription, item.subscription_id)
        if subscription is None:
            raise LookupError(f"Subscription {item.subscription_id} not found")
        thresholds = DelinquencyThresholds.from_config(configs.get(item.partner_id))
        stage = thresholds.stage_for(item.max_days_overdue)
        counters = ["tenants_checked"]
        if not apply_delinquency(session, subscription, stage, ctx.now):
            counters.append("unchanged")
            return counters
        if stage in _STAGE_COUNTERS:
            counters.append(_STAGE_COUNTERS[stage])
        logger.info(
            f"Subscription {subscription.id}: {item.max_days_overdue} days overdue, "
            f"stage {stage.value}, status {subscription.status.value}"
        )
        return counters

    return fold_entities(
        db,
        overdue,
        handle,
        key=lambda item: item.subscription_id,
        ctx=ctx,
        outcome=outcome,
    )
