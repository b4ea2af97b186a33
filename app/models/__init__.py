from app.models.billing import (  # noqa: F401
    OPEN_INVOICE_STATUSES,
    BillingEntity,
    BillingEntityKind,
    CollectionMode,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
)
from app.models.billing_job import (  # noqa: F401
    BillingPhase,
    JobRunLog,
    JobRunStatus,
    PhaseRun,
    PhaseRunStatus,
)
from app.models.catalog import (  # noqa: F401
    DelinquencyStage,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from app.models.collections import DunningDirection, DunningLogEntry  # noqa: F401
from app.models.partner import DelinquencyConfig, Partner, Tenant  # noqa: F401
