"""Initial finsync schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:30:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


provider_enum = _enum("provider_enum", "qbo", "stripe")
environment_enum = _enum("environment_enum", "sandbox", "prod")
entity_type_enum = _enum(
    "entity_type_enum", "invoice", "expense", "client", "vendor", "account", "payment"
)
sync_status_enum = _enum("sync_status_enum", "not_synced", "pending", "synced", "error")


def _guid_type(bind) -> sa.types.TypeEngine:
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(length=36)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def _tenant_column(guid, nullable: bool = False) -> sa.Column:
    return sa.Column(
        "gc_account_id",
        guid,
        sa.ForeignKey("gc_accounts.id", ondelete="CASCADE"),
        nullable=nullable,
    )


def upgrade() -> None:
    bind = op.get_bind()
    guid = _guid_type(bind)

    op.create_table(
        "gc_accounts",
        sa.Column("id", guid, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            _enum("gc_account_status_enum", "active", "inactive"),
            nullable=False,
            server_default="active",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    for table in ("clients", "vendors"):
        op.create_table(
            table,
            sa.Column("id", guid, nullable=False),
            _tenant_column(guid),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=64), nullable=True),
            sa.Column("address", sa.JSON(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(f"ix_{table}_gc_account_id", table, ["gc_account_id"])

    op.create_table(
        "gl_accounts",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("account_type", sa.String(length=64), nullable=False),
        sa.Column("account_number", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_gl_accounts_gc_account_id", "gl_accounts", ["gc_account_id"])

    op.create_table(
        "invoices",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid),
        sa.Column("client_id", guid, sa.ForeignKey("clients.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "gl_account_id", guid, sa.ForeignKey("gl_accounts.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("invoice_number", sa.String(length=64), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column(
            "status",
            _enum("invoice_status_enum", "pending_payment", "paid", "cancelled"),
            nullable=False,
            server_default="pending_payment",
        ),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("invoice_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("payment_method", sa.String(length=32), nullable=True),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_gateway", sa.String(length=32), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoices_gc_account_id", "invoices", ["gc_account_id"])

    op.create_table(
        "expenses",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid),
        sa.Column("vendor_id", guid, sa.ForeignKey("vendors.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "gl_account_id", guid, sa.ForeignKey("gl_accounts.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("expense_number", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            _enum("expense_status_enum", "due", "partially_paid", "paid", "cancelled"),
            nullable=False,
            server_default="due",
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("expense_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_expenses_gc_account_id", "expenses", ["gc_account_id"])

    op.create_table(
        "payments",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid),
        sa.Column("invoice_id", guid, sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=True),
        sa.Column("expense_id", guid, sa.ForeignKey("expenses.id", ondelete="CASCADE"), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=True),
        sa.Column("payment_date", sa.Date(), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "status",
            _enum("payment_status_enum", "pending", "completed", "failed"),
            nullable=False,
            server_default="completed",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payments_gc_account_id", "payments", ["gc_account_id"])

    op.create_table(
        "provider_credentials",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid),
        sa.Column("provider", provider_enum, nullable=False),
        sa.Column("environment", environment_enum, nullable=False, server_default="sandbox"),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("refresh_token_enc", sa.String(), nullable=True),
        sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.JSON(), nullable=True),
        sa.Column("refresh_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "gc_account_id", "provider", "environment", name="uq_credential_tenant_provider_env"
        ),
        sa.UniqueConstraint(
            "provider", "account_id", "environment", name="uq_credential_provider_account_env"
        ),
    )
    op.create_index(
        "ix_provider_credentials_account_id",
        "provider_credentials",
        ["account_id"],
    )

    op.create_table(
        "external_references",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid),
        sa.Column("provider", provider_enum, nullable=False),
        sa.Column("local_entity_type", entity_type_enum, nullable=False),
        sa.Column("local_entity_id", guid, nullable=False),
        sa.Column("external_entity_id", sa.String(length=255), nullable=True),
        sa.Column("external_entity_type", sa.String(length=64), nullable=False),
        sa.Column("sync_status", sync_status_enum, nullable=False, server_default="not_synced"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("source_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider",
            "local_entity_type",
            "local_entity_id",
            name="uq_reference_provider_entity",
        ),
    )
    op.create_index(
        "ix_external_references_gc_account_id",
        "external_references",
        ["gc_account_id"],
    )
    op.create_index(
        "ix_external_references_external",
        "external_references",
        ["provider", "external_entity_type", "external_entity_id"],
    )
    op.create_index(
        "ix_external_references_status",
        "external_references",
        ["provider", "sync_status", "updated_at"],
    )

    op.create_table(
        "sync_log_entries",
        sa.Column("id", guid, nullable=False),
        sa.Column(
            "reference_id",
            guid,
            sa.ForeignKey("external_references.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("gc_account_id", guid, nullable=True),
        sa.Column("provider", provider_enum, nullable=False),
        sa.Column(
            "action",
            _enum("sync_action_enum", "create", "update", "webhook", "reconcile", "unsync"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _enum("sync_log_status_enum", "success", "error", "ignored"),
            nullable=False,
        ),
        sa.Column("request_payload", sa.JSON(), nullable=True),
        sa.Column("response_payload", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_sync_log_entries_reference_id",
        "sync_log_entries",
        ["reference_id"],
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", guid, nullable=False),
        sa.Column("provider", provider_enum, nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=True),
        sa.Column("account_id", sa.String(length=64), nullable=True),
        sa.Column(
            "state",
            _enum("webhook_state_enum", "received", "verified", "applied", "rejected"),
            nullable=False,
            server_default="received",
        ),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )

    op.create_table(
        "payment_records",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid, nullable=True),
        sa.Column("invoice_id", guid, sa.ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_account_id", sa.String(length=64), nullable=False, server_default="platform"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            _enum("payment_record_status_enum", "succeeded", "failed"),
            nullable=False,
        ),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_intent_id", name="uq_payment_records_payment_intent"),
    )
    op.create_index("ix_payment_records_gc_account_id", "payment_records", ["gc_account_id"])

    op.create_table(
        "connect_accounts",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid, nullable=True),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("charges_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("details_submitted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "status",
            _enum("connect_account_status_enum", "active", "deauthorized"),
            nullable=False,
            server_default="active",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", name="uq_connect_accounts_account_id"),
    )
    op.create_index("ix_connect_accounts_gc_account_id", "connect_accounts", ["gc_account_id"])

    op.create_table(
        "account_subscriptions",
        sa.Column("id", guid, nullable=False),
        _tenant_column(guid),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("price_id", sa.String(length=255), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gc_account_id", name="uq_account_subscriptions_gc_account"),
    )
    op.create_index(
        "ix_account_subscriptions_stripe_subscription_id",
        "account_subscriptions",
        ["stripe_subscription_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_account_subscriptions_stripe_subscription_id", table_name="account_subscriptions")
    op.drop_table("account_subscriptions")
    op.drop_index("ix_connect_accounts_gc_account_id", table_name="connect_accounts")
    op.drop_table("connect_accounts")
    op.drop_index("ix_payment_records_gc_account_id", table_name="payment_records")
    op.drop_table("payment_records")
    op.drop_table("webhook_events")
    op.drop_index("ix_sync_log_entries_reference_id", table_name="sync_log_entries")
    op.drop_table("sync_log_entries")
    op.drop_index("ix_external_references_status", table_name="external_references")
    op.drop_index("ix_external_references_external", table_name="external_references")
    op.drop_index("ix_external_references_gc_account_id", table_name="external_references")
    op.drop_table("external_references")
    op.drop_index("ix_provider_credentials_account_id", table_name="provider_credentials")
    op.drop_table("provider_credentials")
    for table in ("payments", "expenses", "invoices", "gl_accounts", "vendors", "clients"):
        op.drop_index(f"ix_{table}_gc_account_id", table_name=table)
        op.drop_table(table)
    op.drop_table("gc_accounts")
