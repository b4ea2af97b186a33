from datetime import UTC, datetime, timedelta

import pytest

from app.models.catalog import DelinquencyStage, SubscriptionStatus
from app.services.lifecycle import (
    InvalidTransition,
    activate_subscription,
    can_transition,
    cancel_subscription,
    transition_subscription,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def test_transition_graph():
    assert can_transition(SubscriptionStatus.trial, SubscriptionStatus.past_due)
    assert can_transition(SubscriptionStatus.past_due, SubscriptionStatus.active)
    assert can_transition(SubscriptionStatus.active, SubscriptionStatus.active)
    assert not can_transition(SubscriptionStatus.canceled, SubscriptionStatus.active)
    assert not can_transition(SubscriptionStatus.active, SubscriptionStatus.trial)


def test_transition_is_noop_when_already_there(subscription):
    assert transition_subscription(subscription, SubscriptionStatus.active) is False


def test_invalid_transition_raises(db_session, subscription, tenant):
    cancel_subscription(db_session, subscription, NOW, "test")
    with pytest.raises(InvalidTransition):
        transition_subscription(subscription, SubscriptionStatus.active)


def test_activate_sets_period_window(db_session, subscription, tenant):
    transition_subscription(subscription, SubscriptionStatus.past_due)
    subscription.delinquency_stage = DelinquencyStage.warning

    assert activate_subscription(subscription, NOW, 30) is True

    assert subscription.status == SubscriptionStatus.active
    assert subscription.current_period_start == NOW
    assert subscription.current_period_end == NOW + timedelta(days=30)
    assert subscription.delinquency_stage == DelinquencyStage.none
    assert tenant.subscription_status == "active"


def test_cancel_deactivates_tenant_once(db_session, subscription, tenant):
    assert cancel_subscription(db_session, subscription, NOW, "manual") is True
    db_session.commit()

    assert subscription.status == SubscriptionStatus.canceled
    assert subscription.cancel_reason == "manual"
    db_session.refresh(tenant)
    assert tenant.is_active is False
    assert cancel_subscription(db_session, subscription, NOW, "manual") is False
