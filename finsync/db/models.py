from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import CHAR, TypeDecorator

from finsync.utils.clock import utcnow


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    """Shared base class for ORM models."""

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


PROVIDERS = ("qbo", "stripe")
ENTITY_TYPES = ("invoice", "expense", "client", "vendor", "account", "payment")
SYNC_STATUSES = ("not_synced", "pending", "synced", "error")
WEBHOOK_STATES = ("received", "verified", "applied", "rejected")

provider_enum = Enum(*PROVIDERS, name="provider_enum", native_enum=False)
entity_type_enum = Enum(*ENTITY_TYPES, name="entity_type_enum", native_enum=False)


def _created_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


def _updated_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


def _tenant_fk(nullable: bool = False) -> Mapped[Any]:
    return mapped_column(
        GUID(),
        ForeignKey("gc_accounts.id", ondelete="CASCADE"),
        nullable=nullable,
        index=True,
    )


class GcAccounts(Base):
    """Tenant (general contractor account) every synced record belongs to."""

    __tablename__ = "gc_accounts"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum("active", "inactive", name="gc_account_status_enum", native_enum=False),
        default="active",
        nullable=False,
    )
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


# Application-owned tables. The service reads snapshots from them and only
# writes back payment/status fields.


class Clients(Base):
    __tablename__ = "clients"

    gc_account_id: Mapped[uuid.UUID] = _tenant_fk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(64))
    address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class Vendors(Base):
    __tablename__ = "vendors"

    gc_account_id: Mapped[uuid.UUID] = _tenant_fk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(64))
    address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class GlAccounts(Base):
    __tablename__ = "gl_accounts"

    gc_account_id: Mapped[uuid.UUID] = _tenant_fk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_type: Mapped[str] = mapped_column(String(64), nullable=False)
    account_number: Mapped[Optional[str]] = mapped_column(String(64))
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class Invoices(Base):
    __tablename__ = "invoices"

    gc_account_id: Mapped[uuid.UUID] = _tenant_fk()
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("clients.id", ondelete="SET NULL")
    )
    gl_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("gl_accounts.id", ondelete="SET NULL")
    )
    invoice_number: Mapped[Optional[str]] = mapped_column(String(64))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(
            "pending_payment",
            "paid",
            "cancelled",
            name="invoice_status_enum",
            native_enum=False,
        ),
        default="pending_payment",
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    invoice_date: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32))
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_gateway: Mapped[Optional[str]] = mapped_column(String(32))
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class Expenses(Base):
    __tablename__ = "expenses"

    gc_account_id: Mapped[uuid.UUID] = _tenant_fk()
    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("vendors.id", ondelete="SET NULL")
    )
    gl_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("gl_accounts.id", ondelete="SET NULL")
    )
    expense_number: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(
            "due",
            "partially_paid",
            "paid",
            "cancelled",
            name="expense_status_enum",
            native_enum=False,
        ),
        default="due",
        nullable=False,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    expense_date: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class Payments(Base):
    __tablename__ = "payments"

    gc_account_id: Mapped[uuid.UUID] = _tenant_fk()
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("invoices.id", ondelete="CASCADE")
    )
    expense_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("expenses.id", ondelete="CASCADE")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32))
    payment_date: Mapped[Optional[date]] = mapped_column(Date)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        Enum("pending", "completed", "failed", name="payment_status_enum", native_enum=False),
        default="completed",
        nullable=False,
    )
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


# Service-owned tables.


class ProviderCredentials(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint(
            "gc_account_id", "provider", "environment", name="uq_credential_tenant_provider_env"
        ),
        UniqueConstraint(
            "provider", "account_id", "environment", name="uq_credential_provider_account_env"
        ),
        Index("ix_provider_credentials_account_id", "account_id"),
    )

    gc_account_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("gc_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(provider_enum, nullable=False)
    environment: Mapped[str] = mapped_column(
        Enum("sandbox", "prod", name="environment_enum", native_enum=False),
        default="sandbox",
        nullable=False,
    )
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    refresh_token_enc: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    access_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refresh_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scopes: Mapped[Optional[list[str]]] = mapped_column(JSON(none_as_null=True))
    refresh_counter: Mapped[int] = mapped_column(default=0, nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class ExternalReferences(Base):
    __tablename__ = "external_references"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "local_entity_type",
            "local_entity_id",
            name="uq_reference_provider_entity",
        ),
        Index(
            "ix_external_references_external",
            "provider",
            "external_entity_type",
            "external_entity_id",
        ),
        Index("ix_external_references_status", "provider", "sync_status", "updated_at"),
    )

    gc_account_id: Mapped[uuid.UUID] = _tenant_fk()
    provider: Mapped[str] = mapped_column(provider_enum, nullable=False)
    local_entity_type: Mapped[str] = mapped_column(entity_type_enum, nullable=False)
    local_entity_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    external_entity_id: Mapped[Optional[str]] = mapped_column(String(255))
    external_entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    sync_status: Mapped[str] = mapped_column(
        Enum(*SYNC_STATUSES, name="sync_status_enum", native_enum=False),
        default="not_synced",
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class SyncLogEntries(Base):
    __tablename__ = "sync_log_entries"
    __table_args__ = (Index("ix_sync_log_entries_reference_id", "reference_id"),)

    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("external_references.id", ondelete="SET NULL")
    )
    gc_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    provider: Mapped[str] = mapped_column(provider_enum, nullable=False)
    action: Mapped[str] = mapped_column(
        Enum(
            "create",
            "update",
            "webhook",
            "reconcile",
            "unsync",
            name="sync_action_enum",
            native_enum=False,
        ),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        Enum("success", "error", "ignored", name="sync_log_status_enum", native_enum=False),
        nullable=False,
    )
    request_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    response_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()


class WebhookEvents(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )

    provider: Mapped[str] = mapped_column(provider_enum, nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(String(128))
    account_id: Mapped[Optional[str]] = mapped_column(String(64))
    state: Mapped[str] = mapped_column(
        Enum(*WEBHOOK_STATES, name="webhook_state_enum", native_enum=False),
        default="received",
        nullable=False,
    )
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    received_at: Mapped[datetime] = _created_at()
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class PaymentRecords(Base):
    __tablename__ = "payment_records"
    __table_args__ = (
        UniqueConstraint("payment_intent_id", name="uq_payment_records_payment_intent"),
    )

    gc_account_id: Mapped[Optional[uuid.UUID]] = _tenant_fk(nullable=True)
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("invoices.id", ondelete="SET NULL")
    )
    payment_intent_id: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_account_id: Mapped[str] = mapped_column(String(64), default="platform", nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum("succeeded", "failed", name="payment_record_status_enum", native_enum=False),
        nullable=False,
    )
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    platform_fee_cents: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class ConnectAccounts(Base):
    __tablename__ = "connect_accounts"
    __table_args__ = (UniqueConstraint("account_id", name="uq_connect_accounts_account_id"),)

    gc_account_id: Mapped[Optional[uuid.UUID]] = _tenant_fk(nullable=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(
        Enum("active", "deauthorized", name="connect_account_status_enum", native_enum=False),
        default="active",
        nullable=False,
    )
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class AccountSubscriptions(Base):
    __tablename__ = "account_subscriptions"
    __table_args__ = (
        UniqueConstraint("gc_account_id", name="uq_account_subscriptions_gc_account"),
    )

    gc_account_id: Mapped[uuid.UUID] = _tenant_fk()
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    price_id: Mapped[Optional[str]] = mapped_column(String(255))
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()
