"""Stripe event handlers.

Each handler receives the verified event as a dict and applies it to the
database. Business problems (unknown tenant, foreign invoice, missing
metadata) raise ``ValidationError`` so the ingestor records the event as
ignored; database errors propagate.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.errors import ValidationError
from finsync.db import references, repo
from finsync.services.mapper import PaymentStatusUpdate, map_from_external_payment
from finsync.utils.clock import from_unix

logger = logging.getLogger("finsync.services.stripe_handlers")

PLATFORM_ACCOUNT = "platform"

StripeHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[Optional[str]]]


def _object(event: dict[str, Any]) -> dict[str, Any]:
    obj = (event.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise ValidationError("Stripe event has no data.object", details={"event_id": event.get("id")})
    return obj


def _tenant_id(obj: dict[str, Any]) -> Optional[uuid.UUID]:
    value = (obj.get("metadata") or {}).get("gc_account_id")
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _require_tenant(obj: dict[str, Any], event: dict[str, Any]) -> uuid.UUID:
    gc_account_id = _tenant_id(obj)
    if gc_account_id is None:
        raise ValidationError(
            "Stripe object carries no gc_account_id metadata",
            details={"event_id": event.get("id"), "event_type": event.get("type")},
        )
    return gc_account_id


async def _owned_invoice_id(
    session: AsyncSession,
    update: PaymentStatusUpdate,
    gc_account_id: uuid.UUID,
) -> Optional[uuid.UUID]:
    if update.local_entity_id is None:
        return None
    invoice = await repo.get_invoice(session, update.local_entity_id)
    if invoice is None:
        logger.warning("stripe_invoice_not_found", extra={"invoice_id": str(update.local_entity_id)})
        return None
    if invoice.gc_account_id != gc_account_id:
        raise ValidationError(
            "Invoice belongs to a different GC account",
            details={"invoice_id": str(invoice.id)},
        )
    return invoice.id


async def _record_reference(
    session: AsyncSession,
    invoice_id: uuid.UUID,
    *,
    gc_account_id: uuid.UUID,
    payment_intent_id: Optional[str],
    status: str,
    event: dict[str, Any],
    error: Optional[str] = None,
) -> None:
    reference = await references.upsert(
        session,
        "stripe",
        "invoice",
        invoice_id,
        gc_account_id=gc_account_id,
        external_type="PaymentIntent",
        status=status,
        external_id=payment_intent_id,
        error=error,
        source_updated_at=from_unix(event.get("created")),
    )
    if reference is None:
        logger.warning(
            "stripe_reference_update_dropped",
            extra={"invoice_id": str(invoice_id), "event_id": event.get("id"), "status": status},
        )
        return
    await references.append_log(
        session,
        provider="stripe",
        action="webhook",
        status="success" if status == "synced" else "error",
        reference=reference,
        request_payload={"event_id": event.get("id"), "event_type": event.get("type")},
        error=error,
    )


async def handle_payment_intent_succeeded(session: AsyncSession, event: dict[str, Any]) -> Optional[str]:
    intent = _object(event)
    gc_account_id = _require_tenant(intent, event)
    update = map_from_external_payment("stripe", intent)
    invoice_id = await _owned_invoice_id(session, update, gc_account_id)

    charges = (intent.get("charges") or {}).get("data") or []
    receipt_email = intent.get("receipt_email") or (
        (charges[0].get("billing_details") or {}).get("email") if charges else None
    )
    await repo.upsert_payment_record(
        session,
        payment_intent_id=intent["id"],
        status="succeeded",
        amount_cents=update.amount_cents or 0,
        currency=(intent.get("currency") or "usd").lower(),
        gc_account_id=gc_account_id,
        invoice_id=invoice_id,
        stripe_account_id=event.get("account") or PLATFORM_ACCOUNT,
        customer_email=receipt_email,
        description=intent.get("description"),
        platform_fee_cents=intent.get("application_fee_amount"),
    )
    if invoice_id is None:
        return "payment recorded without invoice"

    marked = await repo.mark_invoice_paid(
        session,
        invoice_id,
        payment_reference=intent["id"],
        paid_at=update.paid_at or from_unix(event.get("created")),
        payment_method="cc",
        payment_gateway="stripe",
    )
    if not marked:
        logger.info("stripe_invoice_already_settled", extra={"invoice_id": str(invoice_id)})
    await _record_reference(
        session,
        invoice_id,
        gc_account_id=gc_account_id,
        payment_intent_id=intent["id"],
        status="synced",
        event=event,
    )
    return None


async def handle_payment_intent_failed(session: AsyncSession, event: dict[str, Any]) -> Optional[str]:
    intent = _object(event)
    gc_account_id = _require_tenant(intent, event)
    update = map_from_external_payment("stripe", intent)
    invoice_id = await _owned_invoice_id(session, update, gc_account_id)
    message = (intent.get("last_payment_error") or {}).get("message") or "payment failed"

    record = await repo.upsert_payment_record(
        session,
        payment_intent_id=intent["id"],
        status="failed",
        amount_cents=intent.get("amount") or 0,
        currency=(intent.get("currency") or "usd").lower(),
        gc_account_id=gc_account_id,
        invoice_id=invoice_id,
        stripe_account_id=event.get("account") or PLATFORM_ACCOUNT,
        customer_email=intent.get("receipt_email"),
        description=intent.get("description"),
        platform_fee_cents=intent.get("application_fee_amount"),
        error_message=message,
    )
    if record is None:
        return "payment already succeeded"
    if invoice_id is None:
        return "payment recorded without invoice"

    invoice = await repo.get_invoice(session, invoice_id)
    if invoice is not None and invoice.status == "paid":
        return "invoice already paid"
    await _record_reference(
        session,
        invoice_id,
        gc_account_id=gc_account_id,
        payment_intent_id=intent["id"],
        status="error",
        event=event,
        error=message,
    )
    return None


async def handle_checkout_session_completed(session: AsyncSession, event: dict[str, Any]) -> Optional[str]:
    checkout = _object(event)
    gc_account_id = _require_tenant(checkout, event)
    if await repo.get_gc_account_optional(session, gc_account_id) is None:
        raise ValidationError("Unknown GC account", details={"gc_account_id": str(gc_account_id)})

    if checkout.get("mode") == "subscription":
        await repo.upsert_subscription(
            session,
            gc_account_id=gc_account_id,
            status="active",
            stripe_subscription_id=checkout.get("subscription"),
            stripe_customer_id=checkout.get("customer"),
        )
        return None

    update = map_from_external_payment("stripe", checkout)
    invoice_id = await _owned_invoice_id(session, update, gc_account_id)
    if invoice_id is None:
        return "checkout without invoice"
    if update.new_status != "paid":
        return f"checkout payment_status={checkout.get('payment_status')}"

    payment_intent_id = checkout.get("payment_intent")
    if payment_intent_id:
        await repo.upsert_payment_record(
            session,
            payment_intent_id=payment_intent_id,
            status="succeeded",
            amount_cents=update.amount_cents or 0,
            currency=(checkout.get("currency") or "usd").lower(),
            gc_account_id=gc_account_id,
            invoice_id=invoice_id,
            stripe_account_id=event.get("account") or PLATFORM_ACCOUNT,
            customer_email=(checkout.get("customer_details") or {}).get("email"),
            description=None,
            platform_fee_cents=None,
        )
    await repo.mark_invoice_paid(
        session,
        invoice_id,
        payment_reference=update.payment_reference,
        paid_at=from_unix(event.get("created")),
        payment_method="cc",
        payment_gateway="stripe",
    )
    return None


async def handle_subscription_changed(session: AsyncSession, event: dict[str, Any]) -> Optional[str]:
    subscription = _object(event)
    gc_account_id = _tenant_id(subscription)
    if gc_account_id is None:
        existing = await repo.get_subscription_by_stripe_id(session, subscription["id"])
        if existing is None:
            raise ValidationError(
                "Subscription is not linked to a GC account",
                details={"subscription_id": subscription.get("id")},
            )
        gc_account_id = existing.gc_account_id

    status = subscription.get("status") or "canceled"
    if event.get("type") == "customer.subscription.deleted":
        status = "canceled"
    items = (subscription.get("items") or {}).get("data") or []
    price_id = ((items[0].get("price") or {}).get("id")) if items else None
    await repo.upsert_subscription(
        session,
        gc_account_id=gc_account_id,
        status=status,
        stripe_subscription_id=subscription.get("id"),
        stripe_customer_id=subscription.get("customer"),
        price_id=price_id,
        current_period_end=from_unix(subscription.get("current_period_end")),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )
    return None


async def _tenant_for_account(session: AsyncSession, account_id: str) -> Optional[uuid.UUID]:
    credential = await repo.get_credential_by_account(session, provider="stripe", account_id=account_id)
    return credential.gc_account_id if credential is not None else None


async def handle_account_updated(session: AsyncSession, event: dict[str, Any]) -> Optional[str]:
    account = _object(event)
    account_id = account.get("id") or event.get("account")
    if not account_id:
        raise ValidationError("account.updated without an account id")
    await repo.upsert_connect_account(
        session,
        account_id=account_id,
        gc_account_id=_tenant_id(account) or await _tenant_for_account(session, account_id),
        charges_enabled=bool(account.get("charges_enabled")),
        payouts_enabled=bool(account.get("payouts_enabled")),
        details_submitted=bool(account.get("details_submitted")),
    )
    return None


async def handle_account_deauthorized(session: AsyncSession, event: dict[str, Any]) -> Optional[str]:
    account_id = event.get("account")
    if not account_id:
        raise ValidationError("Deauthorization event without an account id")
    existing = await repo.get_connect_account(session, account_id)
    await repo.upsert_connect_account(
        session,
        account_id=account_id,
        gc_account_id=await _tenant_for_account(session, account_id),
        charges_enabled=False,
        payouts_enabled=False,
        details_submitted=bool(existing.details_submitted) if existing else False,
        status="deauthorized",
    )
    credential = await repo.get_credential_by_account(session, provider="stripe", account_id=account_id)
    if credential is None:
        return "no credential for account"
    await repo.mark_credential_failed(session, credential, revoke=True)
    logger.warning(
        "stripe_account_deauthorized",
        extra={"account_id": account_id, "gc_account_id": str(credential.gc_account_id)},
    )
    return None


STRIPE_HANDLERS: dict[str, StripeHandler] = {
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_changed,
    "account.updated": handle_account_updated,
    "account.application.deauthorized": handle_account_deauthorized,
}
