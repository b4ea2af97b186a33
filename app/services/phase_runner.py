"""Fold a phase handler over its entities with per-entity failure isolation.

Each entity's work is committed on its own: a failing entity is rolled back,
recorded in the outcome's error list, and the fold moves on. The phase
deadline is checked between entities so a slow ledger cannot keep a phase
running forever; on expiry the partial outcome travels with the exception.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass
class PhaseContext:
    today: date
    now: datetime
    period: str
    correlation_id: str
    deadline: float | None = None

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


@dataclass
class PhaseOutcome:
    counts: Counter = field(default_factory=Counter)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def add(self, name: str, amount: int = 1) -> None:
        self.counts[name] += amount

    def as_results(self) -> dict[str, Any]:
        return {"counts": dict(self.counts), "errors": list(self.errors)}


class PhaseTimeout(Exception):
    def __init__(self, outcome: PhaseOutcome, message: str = "Phase deadline exceeded"):
        self.outcome = outcome
        super().__init__(message)


def fold_entities(
    db: Session,
    items: Iterable,
    handler: Callable[[Session, Any], str | Iterable[str] | None],
    key: Callable[[Any], Any] = lambda item: getattr(item, "id", item),
    ctx: PhaseContext | None = None,
    outcome: PhaseOutcome | None = None,
) -> PhaseOutcome:
    """Apply ``handler`` to every item, committing after each one.

    The handler returns the counter name(s) to bump for the item, or None.
    """
    outcome = outcome or PhaseOutcome()
    for item in items:
        if ctx is not None and ctx.expired():
            raise PhaseTimeout(outcome)
        entity_key = str(key(item))
        try:
            counted = handler(db, item)
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.warning(
                f"Entity {entity_key} failed: {exc}",
                extra={"entity_id": entity_key},
            )
            outcome.errors.append({"entity": entity_key, "error": str(exc)})
            continue
        if counted is None:
            continue
        if isinstance(counted, str):
            counted = (counted,)
        for name in counted:
            outcome.add(name)
    return outcome
