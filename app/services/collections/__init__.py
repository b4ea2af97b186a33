"""Collections services package.

Dunning evaluation (cycle phase B) and the dunning audit log.
"""

from app.services.collections._core import (
    DEFAULT_DUNNING_POLICY,
    DunningEvaluator,
    DunningLog,
    OverdueFacts,
    compute_level,
    compute_overdue_facts,
    dunning_evaluator,
    dunning_log,
    resolve_policy,
)

__all__ = [
    "DEFAULT_DUNNING_POLICY",
    "DunningEvaluator",
    "DunningLog",
    "OverdueFacts",
    "compute_level",
    "compute_overdue_facts",
    "dunning_evaluator",
    "dunning_log",
    "resolve_policy",
]
