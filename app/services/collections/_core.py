import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from app.metrics import record_dunning_transition
from app.models.billing import BillingEntity, Invoice
from app.models.collections import DunningDirection, DunningLogEntry
from app.services.billing import invoices, overdue_query
from app.services.billing.periods import days_overdue, resolve_today
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_404,
    round_money,
)
from app.services.phase_runner import PhaseContext, PhaseOutcome, fold_entities
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

MAX_DUNNING_LEVEL = 4
RESTORE_ACTION = "restore"

DEFAULT_DUNNING_POLICY: dict[str, dict[str, Any]] = {
    "L1": {"days_overdue": 1, "action": "notify", "description": "Payment reminder"},
    "L2": {"days_overdue": 8, "action": "read_only", "description": "Read-only access"},
    "L3": {
        "days_overdue": 16,
        "action": "block_new_tenants",
        "description": "New tenant onboarding blocked",
    },
    "L4": {"days_overdue": 31, "action": "suspend", "description": "Full block"},
}


def resolve_policy(entity: BillingEntity) -> dict[str, dict[str, Any]]:
    """Entity policy merged over the defaults, level by level.

    Levels with a missing or non-numeric threshold keep the default.
    """
    policy = {key: dict(value) for key, value in DEFAULT_DUNNING_POLICY.items()}
    configured = entity.dunning_policy or {}
    for key in policy:
        override = configured.get(key)
        if not isinstance(override, dict):
            continue
        threshold = override.get("days_overdue")
        if isinstance(threshold, bool):
            threshold = None
        if threshold is not None:
            try:
                policy[key]["days_overdue"] = int(threshold)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid {key} threshold for entity {entity.id}")
        if override.get("action"):
            policy[key]["action"] = str(override["action"])
        if override.get("description"):
            policy[key]["description"] = str(override["description"])
    return policy


def compute_level(max_days_overdue: int, policy: dict[str, dict[str, Any]]) -> int:
    """Highest level whose day threshold is met; 0 when nothing is overdue."""
    if max_days_overdue <= 0:
        return 0
    for level in range(MAX_DUNNING_LEVEL, 0, -1):
        if max_days_overdue >= policy[f"L{level}"]["days_overdue"]:
            return level
    return 0


def level_action(level: int, policy: dict[str, dict[str, Any]]) -> str:
    if level == 0:
        return RESTORE_ACTION
    return policy[f"L{level}"]["action"]


@dataclass
class OverdueFacts:
    overdue_count: int
    overdue_amount: Decimal
    max_days_overdue: int
    oldest_invoice_id: Any = None

    def as_dict(self, today: date) -> dict[str, Any]:
        return {
            "today": today.isoformat(),
            "overdue_count": self.overdue_count,
            "overdue_amount": str(self.overdue_amount),
            "max_days_overdue": self.max_days_overdue,
            "oldest_invoice_id": str(self.oldest_invoice_id) if self.oldest_invoice_id else None,
        }


def compute_overdue_facts(db: Session, entity_id, today: date) -> OverdueFacts:
    rows = (
        overdue_query(db, today)
        .filter(Invoice.entity_id == coerce_uuid(entity_id))
        .order_by(Invoice.due_date.asc())
        .all()
    )
    if not rows:
        return OverdueFacts(0, Decimal("0.00"), 0)
    return OverdueFacts(
        overdue_count=len(rows),
        overdue_amount=round_money(sum((row.amount or Decimal("0.00") for row in rows), Decimal("0.00"))),
        max_days_overdue=max(days_overdue(row.due_date, today) for row in rows),
        oldest_invoice_id=rows[0].id,
    )


class DunningEvaluator(ListResponseMixin):
    @staticmethod
    def evaluate_entity(
        db: Session,
        entity: BillingEntity,
        today: date,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Recompute an entity's dunning level and persist it only on change.

        The level write is conditioned on the level read here, so a
        concurrent evaluation of the same entity makes one of them a no-op
        instead of logging the same transition twice. Returns the counter
        name describing what happened.
        """
        now = now or datetime.now(UTC)
        invoices.mark_overdue(db, today, entity_id=entity.id)
        facts = compute_overdue_facts(db, entity.id, today)
        policy = resolve_policy(entity)
        current = entity.current_dunning_level or 0
        computed = compute_level(facts.max_days_overdue, policy)
        if computed == current:
            return "unchanged"

        if computed == 0:
            started_at = None
        elif current == 0 or entity.dunning_started_at is None:
            started_at = now
        else:
            started_at = entity.dunning_started_at
        updated = (
            db.query(BillingEntity)
            .filter(BillingEntity.id == entity.id)
            .filter(BillingEntity.current_dunning_level == current)
            .update(
                {
                    BillingEntity.current_dunning_level: computed,
                    BillingEntity.dunning_started_at: started_at,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            logger.warning(
                f"Dunning level of entity {entity.id} changed concurrently; skipping",
                extra={"entity_id": str(entity.id)},
            )
            return "conflicts"

        direction = (
            DunningDirection.escalation if computed > current else DunningDirection.reversal
        )
        action = level_action(computed, policy)
        computed_facts = facts.as_dict(today)
        if computed > 0:
            computed_facts["threshold_days"] = policy[f"L{computed}"]["days_overdue"]
        db.add(
            DunningLogEntry(
                entity_id=entity.id,
                invoice_id=facts.oldest_invoice_id,
                from_level=current,
                to_level=computed,
                direction=direction,
                action=action,
                reason=(
                    f"{facts.overdue_count} overdue invoice(s), "
                    f"max {facts.max_days_overdue} days overdue"
                ),
                computed_facts=computed_facts,
                correlation_id=correlation_id,
                executed_at=now,
            )
        )
        db.expire(entity)
        record_dunning_transition(direction.value, computed)
        logger.info(
            f"Entity {entity.id} dunning L{current} -> L{computed} ({action})",
            extra={"entity_id": str(entity.id)},
        )
        if direction == DunningDirection.escalation:
            return "escalations"
        return "reversals"

    @staticmethod
    def run(db: Session, ctx: PhaseContext) -> PhaseOutcome:
        entities = (
            db.query(BillingEntity)
            .filter(BillingEntity.is_active.is_(True))
            .order_by(BillingEntity.created_at.asc())
            .all()
        )
        outcome = PhaseOutcome()
        outcome.add("entities_checked", len(entities))

        def handle(session: Session, entity: BillingEntity) -> str:
            return DunningEvaluator.evaluate_entity(
                session, entity, ctx.today, ctx.correlation_id, ctx.now
            )

        return fold_entities(db, entities, handle, ctx=ctx, outcome=outcome)

    @staticmethod
    def status(db: Session, entity_id: str, today: date | None = None) -> dict:
        """Read-only view of an entity's dunning position."""
        entity = get_or_404(db, BillingEntity, entity_id, detail="Billing entity not found")
        today = today or resolve_today()
        facts = compute_overdue_facts(db, entity.id, today)
        policy = resolve_policy(entity)
        return {
            "has_config": entity.dunning_policy is not None,
            "current_level": entity.current_dunning_level or 0,
            "suggested_level": compute_level(facts.max_days_overdue, policy),
            "overdue_amount": facts.overdue_amount,
            "overdue_count": facts.overdue_count,
            "max_days_overdue": facts.max_days_overdue,
            "credit_limit": entity.credit_limit or Decimal("0.00"),
            "collection_mode": entity.collection_mode.value if entity.collection_mode else None,
            "dunning_policy": policy,
        }


class DunningLog(ListResponseMixin):
    @staticmethod
    def list(
        db: Session,
        entity_id: str,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        entity = get_or_404(db, BillingEntity, entity_id, detail="Billing entity not found")
        query = db.query(DunningLogEntry).filter(DunningLogEntry.entity_id == entity.id)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"executed_at": DunningLogEntry.executed_at, "to_level": DunningLogEntry.to_level},
        )
        return apply_pagination(query, limit, offset).all()


dunning_evaluator = DunningEvaluator()
dunning_log = DunningLog()
