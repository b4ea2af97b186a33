"""Billing services package.

    from app.services import billing as billing_service
    billing_service.invoices.mark_paid(db, invoice_id)
"""

from app.services.billing.invoices import (
    GenerationResult,
    Invoices,
    invoice_number,
    overdue_query,
)

# Singleton instances for service access
invoices = Invoices()

__all__ = [
    "GenerationResult",
    "Invoices",
    "invoice_number",
    "invoices",
    "overdue_query",
]
