from app.tasks.billing import run_billing_cycle

__all__ = ["run_billing_cycle"]
