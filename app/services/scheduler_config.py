import logging
import os

from celery.schedules import crontab

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def get_celery_config() -> dict:
    broker = (
        settings.celery_broker_url
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        settings.celery_result_backend
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or settings.billing_timezone,
        "task_acks_late": True,
    }
    config["beat_max_loop_interval"] = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL") or 5
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if settings.billing_cycle_enabled:
        schedule["billing_cycle"] = {
            "task": "app.tasks.billing.run_billing_cycle",
            "schedule": crontab(
                hour=settings.billing_cycle_hour,
                minute=settings.billing_cycle_minute,
            ),
        }
    else:
        logger.info("Billing cycle schedule disabled")
    return schedule
