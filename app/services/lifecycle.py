"""Subscription status transitions.

Every status change of a tenant subscription goes through this module so the
transition graph and its side effects (tenant deactivation on cancel, period
windows on activation) are applied in one place.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.models.catalog import DelinquencyStage, Subscription, SubscriptionStatus
from app.models.partner import Tenant

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.trial: frozenset(
        {SubscriptionStatus.active, SubscriptionStatus.past_due, SubscriptionStatus.canceled}
    ),
    SubscriptionStatus.active: frozenset(
        {SubscriptionStatus.past_due, SubscriptionStatus.canceled}
    ),
    SubscriptionStatus.past_due: frozenset(
        {SubscriptionStatus.active, SubscriptionStatus.canceled}
    ),
    SubscriptionStatus.canceled: frozenset(),
}


class InvalidTransition(Exception):
    def __init__(self, from_status: SubscriptionStatus, to_status: SubscriptionStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Subscription cannot move from {from_status.value} to {to_status.value}"
        )


def can_transition(from_status: SubscriptionStatus, to_status: SubscriptionStatus) -> bool:
    return from_status == to_status or to_status in ALLOWED_TRANSITIONS[from_status]


def transition_subscription(
    subscription: Subscription, to_status: SubscriptionStatus
) -> bool:
    """Move a subscription to ``to_status``.

    Returns False when the subscription is already there.

    Raises:
        InvalidTransition: if the graph has no such edge
    """
    from_status = subscription.status
    if from_status == to_status:
        return False
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransition(from_status, to_status)
    subscription.status = to_status
    logger.info(
        f"Subscription {subscription.id}: {from_status.value} -> {to_status.value}"
    )
    return True


def activate_subscription(
    subscription: Subscription, period_start: datetime, period_days: int
) -> bool:
    changed = transition_subscription(subscription, SubscriptionStatus.active)
    if changed:
        subscription.current_period_start = period_start
        subscription.current_period_end = period_start + timedelta(days=period_days)
        subscription.delinquency_stage = DelinquencyStage.none
        if subscription.tenant is not None:
            subscription.tenant.subscription_status = SubscriptionStatus.active.value
    return changed


def cancel_subscription(
    db: Session,
    subscription: Subscription,
    canceled_at: datetime,
    reason: str,
) -> bool:
    """Cancel a subscription and deactivate its tenant in the same unit of work.

    Returns False when both were already in that state.
    """
    changed = transition_subscription(subscription, SubscriptionStatus.canceled)
    if changed:
        subscription.canceled_at = canceled_at
        subscription.cancel_reason = reason
    tenant = db.get(Tenant, subscription.tenant_id)
    if tenant is not None and (
        tenant.is_active or tenant.subscription_status != SubscriptionStatus.canceled.value
    ):
        tenant.is_active = False
        tenant.subscription_status = SubscriptionStatus.canceled.value
        logger.info(f"Tenant {tenant.id} deactivated ({reason})")
        changed = True
    return changed
