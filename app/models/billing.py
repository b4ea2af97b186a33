import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class BillingEntityKind(enum.Enum):
    partner = "partner"
    tenant = "tenant"


class CollectionMode(enum.Enum):
    INVOICE = "INVOICE"
    PIX = "PIX"
    CARD = "CARD"
    BOLETO = "BOLETO"


class InvoiceStatus(enum.Enum):
    pending = "pending"
    overdue = "overdue"
    paid = "paid"
    canceled = "canceled"


class InvoiceKind(enum.Enum):
    recurring = "recurring"
    trial_conversion = "trial_conversion"


OPEN_INVOICE_STATUSES = (InvoiceStatus.pending, InvoiceStatus.overdue)


class BillingEntity(Base):
    """Billing configuration and cached dunning state of a partner or tenant."""

    __tablename__ = "billing_entities"
    __table_args__ = (
        CheckConstraint(
            "(partner_id IS NOT NULL) <> (tenant_id IS NOT NULL)",
            name="ck_billing_entities_exactly_one_owner",
        ),
        CheckConstraint(
            "current_dunning_level BETWEEN 0 AND 4",
            name="ck_billing_entities_dunning_level_range",
        ),
        CheckConstraint(
            "billing_day BETWEEN 1 AND 31",
            name="ck_billing_entities_billing_day_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    kind: Mapped[BillingEntityKind] = mapped_column(
        Enum(BillingEntityKind), default=BillingEntityKind.partner
    )
    partner_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("partners.id"), unique=True
    )
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), unique=True
    )
    collection_mode: Mapped[CollectionMode] = mapped_column(
        Enum(CollectionMode), default=CollectionMode.INVOICE
    )
    credit_limit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    grace_days: Mapped[int] = mapped_column(Integer, default=5)
    billing_day: Mapped[int] = mapped_column(Integer, default=1)
    # {"L1": {"days_overdue": 1, "action": "notify", "description": "..."}, ...}
    dunning_policy: Mapped[dict | None] = mapped_column(JSON)
    current_dunning_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    dunning_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    partner = relationship("Partner")
    tenant = relationship("Tenant")
    invoices = relationship("Invoice", back_populates="entity")
    dunning_entries = relationship("DunningLogEntry", back_populates="entity")


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index(
            "ix_invoices_recurring_entity_period_unique",
            "entity_id",
            "period",
            unique=True,
            postgresql_where=text("kind = 'recurring' AND status != 'canceled'"),
            sqlite_where=text("kind = 'recurring' AND status != 'canceled'"),
        ),
        Index("ix_invoices_status_due_date", "status", "due_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_entities.id")
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id")
    )
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id")
    )
    partner_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("partners.id")
    )
    plan_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("plans.id")
    )
    kind: Mapped[InvoiceKind] = mapped_column(
        Enum(InvoiceKind), default=InvoiceKind.recurring
    )
    invoice_number: Mapped[str | None] = mapped_column(String(80))
    period: Mapped[str | None] = mapped_column(String(7))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="BRL")
    description: Mapped[str | None] = mapped_column(Text)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.pending
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    correlation_id: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    entity = relationship("BillingEntity", back_populates="invoices")
    subscription = relationship("Subscription", back_populates="invoices")
    tenant = relationship("Tenant")
    partner = relationship("Partner")
