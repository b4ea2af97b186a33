"""Billing period and calendar helpers."""

from __future__ import annotations

from calendar import monthrange
from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

from app.config import settings


def billing_period(value: date) -> str:
    """Calendar-month identifier (YYYY-MM) for a logical run date."""
    return f"{value.year:04d}-{value.month:02d}"


def lock_window(value: date, granularity: str = "day") -> str:
    """Key used for phase locks: one run per day, or one per billing period."""
    if granularity == "month":
        return billing_period(value)
    return value.isoformat()


def billing_day_matches(billing_day: int, today: date) -> bool:
    """True when ``today`` is the entity's billing day.

    Billing days past the end of a short month fall on its last day.
    """
    last_day = monthrange(today.year, today.month)[1]
    return min(max(billing_day, 1), last_day) == today.day


def days_overdue(due_date: date, today: date) -> int:
    return max((today - due_date).days, 0)


def billing_zone(timezone_name: str | None = None) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name or settings.billing_timezone)
    except (KeyError, ValueError):
        return ZoneInfo("UTC")


def resolve_today(now: datetime | None = None, timezone_name: str | None = None) -> date:
    """Logical run date in the billing timezone."""
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(billing_zone(timezone_name)).date()


def end_of_day(value: date, timezone_name: str | None = None) -> datetime:
    """Last instant of ``value`` in the billing timezone, as UTC."""
    local = datetime.combine(value, time.max, tzinfo=billing_zone(timezone_name))
    return local.astimezone(UTC)
