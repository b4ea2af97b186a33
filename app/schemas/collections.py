from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.collections import DunningDirection


class DunningStatusRead(BaseModel):
    has_config: bool
    current_level: int
    suggested_level: int
    overdue_amount: Decimal
    overdue_count: int
    max_days_overdue: int
    credit_limit: Decimal
    collection_mode: str | None
    dunning_policy: dict[str, Any] | None


class DunningLogEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID
    invoice_id: UUID | None
    from_level: int
    to_level: int
    direction: DunningDirection
    action: str
    reason: str | None
    computed_facts: dict[str, Any] | None
    correlation_id: str | None
    executed_at: datetime
