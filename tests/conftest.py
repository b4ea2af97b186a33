import os
import sqlite3
import uuid
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))

# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

from app.db import Base, get_db
from app.models.billing import (
    BillingEntity,
    BillingEntityKind,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
)
from app.models.catalog import Plan, Subscription, SubscriptionStatus
from app.models.partner import DelinquencyConfig, Partner, Tenant

TODAY = date(2026, 3, 10)
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        # pysqlite's own transaction handling breaks SAVEPOINT; let
        # SQLAlchemy emit BEGIN itself.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    # Service code commits and rolls back freely; each of those only touches
    # a savepoint inside the outer per-test transaction.
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def api_client(db_session):
    from fastapi.testclient import TestClient

    from app.main import app

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        with TestClient(app, raise_server_exceptions=False) as client:
            yield client
    finally:
        app.dependency_overrides.pop(get_db, None)


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def partner(db_session):
    partner = Partner(name="Partner Foods", email=_unique_email())
    db_session.add(partner)
    db_session.commit()
    db_session.refresh(partner)
    return partner


@pytest.fixture()
def tenant(db_session, partner):
    tenant = Tenant(
        partner_id=partner.id,
        name="Cantina Central",
        email=_unique_email(),
        subscription_status="active",
    )
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant


@pytest.fixture()
def paid_plan(db_session, partner):
    plan = Plan(partner_id=partner.id, name="Pro", monthly_price=Decimal("149.90"))
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def free_plan(db_session, partner):
    plan = Plan(partner_id=partner.id, name="Free", monthly_price=Decimal("0.00"))
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def subscription(db_session, tenant, paid_plan):
    subscription = Subscription(
        tenant_id=tenant.id,
        plan_id=paid_plan.id,
        status=SubscriptionStatus.active,
        current_period_start=NOW - timedelta(days=20),
        current_period_end=NOW + timedelta(days=10),
    )
    db_session.add(subscription)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


@pytest.fixture()
def billing_entity(db_session, partner):
    entity = BillingEntity(
        kind=BillingEntityKind.partner,
        partner_id=partner.id,
        billing_day=TODAY.day,
        grace_days=5,
        credit_limit=Decimal("500.00"),
    )
    db_session.add(entity)
    db_session.commit()
    db_session.refresh(entity)
    return entity


@pytest.fixture()
def delinquency_config(db_session, partner):
    config = DelinquencyConfig(
        partner_id=partner.id,
        warning_days=1,
        partial_block_days=7,
        full_block_days=15,
    )
    db_session.add(config)
    db_session.commit()
    db_session.refresh(config)
    return config


def make_invoice(
    db_session,
    entity=None,
    subscription=None,
    due_date: date | None = None,
    amount: str = "100.00",
    status: InvoiceStatus = InvoiceStatus.pending,
    kind: InvoiceKind = InvoiceKind.recurring,
    period: str | None = None,
) -> Invoice:
    invoice = Invoice(
        entity_id=entity.id if entity else None,
        subscription_id=subscription.id if subscription else None,
        tenant_id=subscription.tenant_id if subscription else None,
        partner_id=entity.partner_id if entity else None,
        kind=kind,
        period=period,
        amount=Decimal(amount),
        due_date=due_date or TODAY,
        status=status,
    )
    db_session.add(invoice)
    db_session.commit()
    db_session.refresh(invoice)
    return invoice


@pytest.fixture()
def invoice_factory(db_session):
    def _make(**kwargs) -> Invoice:
        return make_invoice(db_session, **kwargs)

    return _make
