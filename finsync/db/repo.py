from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from fastapi import HTTPException, status
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.db.models import (
    AccountSubscriptions,
    Clients,
    ConnectAccounts,
    Expenses,
    GcAccounts,
    GlAccounts,
    Invoices,
    PaymentRecords,
    Payments,
    ProviderCredentials,
    Vendors,
    WebhookEvents,
)
from finsync.db.references import dialect_insert
from finsync.utils.clock import utcnow

LOCAL_ENTITY_MODELS: dict[str, type] = {
    "invoice": Invoices,
    "expense": Expenses,
    "client": Clients,
    "vendor": Vendors,
    "account": GlAccounts,
    "payment": Payments,
}


async def get_gc_account(session: AsyncSession, gc_account_id: uuid.UUID) -> GcAccounts:
    result = await session.execute(select(GcAccounts).where(GcAccounts.id == gc_account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="GC account not found",
        )
    return account


async def get_gc_account_optional(
    session: AsyncSession, gc_account_id: uuid.UUID
) -> Optional[GcAccounts]:
    result = await session.execute(select(GcAccounts).where(GcAccounts.id == gc_account_id))
    return result.scalar_one_or_none()


async def get_local_entity(session: AsyncSession, entity_type: str, entity_id: uuid.UUID) -> Any:
    model = LOCAL_ENTITY_MODELS[entity_type]
    result = await session.execute(select(model).where(model.id == entity_id))
    return result.scalar_one_or_none()


async def get_invoice(session: AsyncSession, invoice_id: uuid.UUID) -> Optional[Invoices]:
    result = await session.execute(select(Invoices).where(Invoices.id == invoice_id))
    return result.scalar_one_or_none()


# Credentials


async def get_credentials(
    session: AsyncSession,
    *,
    gc_account_id: uuid.UUID,
    provider: Optional[str] = None,
) -> Iterable[ProviderCredentials]:
    stmt = select(ProviderCredentials).where(ProviderCredentials.gc_account_id == gc_account_id)
    if provider:
        stmt = stmt.where(ProviderCredentials.provider == provider)
    stmt = stmt.order_by(ProviderCredentials.created_at.desc())
    result = await session.execute(stmt)
    return result.scalars().all()


async def get_credential_optional(
    session: AsyncSession,
    *,
    gc_account_id: uuid.UUID,
    provider: str,
    environment: str,
) -> Optional[ProviderCredentials]:
    result = await session.execute(
        select(ProviderCredentials).where(
            ProviderCredentials.gc_account_id == gc_account_id,
            ProviderCredentials.provider == provider,
            ProviderCredentials.environment == environment,
        )
    )
    return result.scalar_one_or_none()


async def get_credential_by_account(
    session: AsyncSession,
    *,
    provider: str,
    account_id: str,
) -> Optional[ProviderCredentials]:
    result = await session.execute(
        select(ProviderCredentials)
        .where(
            ProviderCredentials.provider == provider,
            ProviderCredentials.account_id == account_id,
        )
        .order_by(ProviderCredentials.updated_at.desc())
    )
    return result.scalars().first()


async def save_credential(
    session: AsyncSession, credential: ProviderCredentials
) -> ProviderCredentials:
    session.add(credential)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Credential conflict",
        ) from exc
    await session.refresh(credential)
    return credential


async def swap_credential_tokens(
    session: AsyncSession,
    credential: ProviderCredentials,
    *,
    observed_expires_at: Optional[datetime],
    access_token: str,
    access_expires_at: Optional[datetime],
    refresh_token_enc: Optional[str],
    refresh_expires_at: Optional[datetime],
    scopes: Optional[list[str]],
) -> bool:
    """Store refreshed tokens only if nobody refreshed since we looked.

    Returns False when the row's ``access_expires_at`` no longer matches the
    value observed before the refresh, meaning a concurrent request won.
    """
    guard = (
        ProviderCredentials.access_expires_at.is_(None)
        if observed_expires_at is None
        else ProviderCredentials.access_expires_at == observed_expires_at
    )
    values: dict[str, Any] = {
        "access_token": access_token,
        "access_expires_at": access_expires_at,
        "refresh_counter": ProviderCredentials.refresh_counter + 1,
        "last_error_at": None,
        "updated_at": utcnow(),
    }
    if refresh_token_enc is not None:
        values["refresh_token_enc"] = refresh_token_enc
    if refresh_expires_at is not None:
        values["refresh_expires_at"] = refresh_expires_at
    if scopes is not None:
        values["scopes"] = scopes
    result = await session.execute(
        update(ProviderCredentials)
        .where(ProviderCredentials.id == credential.id, guard)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.refresh(credential)
    return result.rowcount == 1


async def mark_credential_failed(
    session: AsyncSession,
    credential: ProviderCredentials,
    *,
    revoke: bool = False,
) -> None:
    now = utcnow()
    credential.last_error_at = now
    if revoke:
        credential.revoked_at = now
    await session.flush()


# Stripe-side records written by webhooks


async def upsert_payment_record(
    session: AsyncSession,
    *,
    payment_intent_id: str,
    status: str,
    amount_cents: int,
    currency: str,
    gc_account_id: Optional[uuid.UUID],
    invoice_id: Optional[uuid.UUID],
    stripe_account_id: str,
    customer_email: Optional[str],
    description: Optional[str],
    platform_fee_cents: Optional[int],
    error_message: Optional[str] = None,
) -> Optional[PaymentRecords]:
    """One row per payment intent; a succeeded row is never downgraded.

    Returns None when the stored row already reflects a succeeded payment.
    """
    now = utcnow()
    insert = dialect_insert(session)
    stmt = insert(PaymentRecords).values(
        id=uuid.uuid4(),
        payment_intent_id=payment_intent_id,
        status=status,
        amount_cents=amount_cents,
        currency=currency,
        gc_account_id=gc_account_id,
        invoice_id=invoice_id,
        stripe_account_id=stripe_account_id,
        customer_email=customer_email,
        description=description,
        platform_fee_cents=platform_fee_cents,
        error_message=error_message,
        created_at=now,
        updated_at=now,
    )
    stored = PaymentRecords.__table__.c
    stmt = stmt.on_conflict_do_update(
        index_elements=["payment_intent_id"],
        set_={
            "status": stmt.excluded.status,
            "amount_cents": stmt.excluded.amount_cents,
            "error_message": stmt.excluded.error_message,
            "updated_at": now,
        },
        where=stored.status != "succeeded",
    ).returning(PaymentRecords)
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    return result.scalar_one_or_none()


async def count_payment_records(session: AsyncSession, payment_intent_id: str) -> int:
    result = await session.execute(
        select(func.count(PaymentRecords.id)).where(
            PaymentRecords.payment_intent_id == payment_intent_id
        )
    )
    return int(result.scalar_one())


async def mark_invoice_paid(
    session: AsyncSession,
    invoice_id: uuid.UUID,
    *,
    payment_reference: Optional[str],
    paid_at: Optional[datetime],
    payment_method: str,
    payment_gateway: str,
) -> bool:
    """Returns False if the invoice is missing, already paid or cancelled."""
    result = await session.execute(
        update(Invoices)
        .where(Invoices.id == invoice_id, Invoices.status == "pending_payment")
        .values(
            status="paid",
            payment_method=payment_method,
            payment_gateway=payment_gateway,
            payment_reference=payment_reference,
            payment_date=paid_at or utcnow(),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def upsert_connect_account(
    session: AsyncSession,
    *,
    account_id: str,
    gc_account_id: Optional[uuid.UUID],
    charges_enabled: bool,
    payouts_enabled: bool,
    details_submitted: bool,
    status: str = "active",
) -> ConnectAccounts:
    now = utcnow()
    insert = dialect_insert(session)
    stmt = insert(ConnectAccounts).values(
        id=uuid.uuid4(),
        account_id=account_id,
        gc_account_id=gc_account_id,
        charges_enabled=charges_enabled,
        payouts_enabled=payouts_enabled,
        details_submitted=details_submitted,
        status=status,
        created_at=now,
        updated_at=now,
    )
    stored = ConnectAccounts.__table__.c
    stmt = stmt.on_conflict_do_update(
        index_elements=["account_id"],
        set_={
            "charges_enabled": stmt.excluded.charges_enabled,
            "payouts_enabled": stmt.excluded.payouts_enabled,
            "details_submitted": stmt.excluded.details_submitted,
            "status": stmt.excluded.status,
            "gc_account_id": func.coalesce(stmt.excluded.gc_account_id, stored.gc_account_id),
            "updated_at": now,
        },
    ).returning(ConnectAccounts)
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    return result.scalar_one()


async def get_connect_account(
    session: AsyncSession, account_id: str
) -> Optional[ConnectAccounts]:
    result = await session.execute(
        select(ConnectAccounts).where(ConnectAccounts.account_id == account_id)
    )
    return result.scalar_one_or_none()


async def upsert_subscription(
    session: AsyncSession,
    *,
    gc_account_id: uuid.UUID,
    status: str,
    stripe_subscription_id: Optional[str],
    stripe_customer_id: Optional[str],
    price_id: Optional[str] = None,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
) -> AccountSubscriptions:
    now = utcnow()
    insert = dialect_insert(session)
    stmt = insert(AccountSubscriptions).values(
        id=uuid.uuid4(),
        gc_account_id=gc_account_id,
        status=status,
        stripe_subscription_id=stripe_subscription_id,
        stripe_customer_id=stripe_customer_id,
        price_id=price_id,
        current_period_end=current_period_end,
        cancel_at_period_end=cancel_at_period_end,
        created_at=now,
        updated_at=now,
    )
    stored = AccountSubscriptions.__table__.c
    stmt = stmt.on_conflict_do_update(
        index_elements=["gc_account_id"],
        set_={
            "status": stmt.excluded.status,
            "stripe_subscription_id": func.coalesce(
                stmt.excluded.stripe_subscription_id, stored.stripe_subscription_id
            ),
            "stripe_customer_id": func.coalesce(
                stmt.excluded.stripe_customer_id, stored.stripe_customer_id
            ),
            "price_id": func.coalesce(stmt.excluded.price_id, stored.price_id),
            "current_period_end": func.coalesce(
                stmt.excluded.current_period_end, stored.current_period_end
            ),
            "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
            "updated_at": now,
        },
    ).returning(AccountSubscriptions)
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    return result.scalar_one()


async def get_subscription_by_stripe_id(
    session: AsyncSession, stripe_subscription_id: str
) -> Optional[AccountSubscriptions]:
    result = await session.execute(
        select(AccountSubscriptions).where(
            AccountSubscriptions.stripe_subscription_id == stripe_subscription_id
        )
    )
    return result.scalar_one_or_none()


# Webhook events


async def record_webhook_event(
    session: AsyncSession,
    *,
    provider: str,
    event_id: str,
    event_type: Optional[str],
    account_id: Optional[str],
    payload: Optional[dict[str, Any]],
) -> WebhookEvents:
    """Insert the event row once per (provider, event_id) and return it."""
    insert = dialect_insert(session)
    stmt = (
        insert(WebhookEvents)
        .values(
            id=uuid.uuid4(),
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            state="received",
            payload=payload,
            received_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["provider", "event_id"])
    )
    await session.execute(stmt)
    result = await session.execute(
        select(WebhookEvents)
        .where(WebhookEvents.provider == provider, WebhookEvents.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def set_webhook_state(
    session: AsyncSession,
    event: WebhookEvents,
    state: str,
    *,
    error_message: Optional[str] = None,
) -> None:
    event.state = state
    event.error_message = error_message
    if state == "applied":
        event.processed_at = utcnow()
    await session.flush()
