from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.api.deps import get_stripe_gateway
from finsync.core import logging as logging_utils
from finsync.core.config import Settings, get_settings
from finsync.core.errors import ReauthorizationRequired
from finsync.db import repo
from finsync.db.models import GcAccounts
from finsync.db.session import get_session
from finsync.schemas.credentials import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    InvoiceCheckoutRequest,
    InvoiceCheckoutResponse,
)
from finsync.services.stripe_gateway import StripeGateway
from finsync.utils.validators import parse_uuid


router = APIRouter(prefix="/stripe", tags=["stripe"])


async def _active_account(session: AsyncSession, account_uuid: uuid.UUID) -> GcAccounts:
    logging_utils.set_request_context(gc_account_id=str(account_uuid), provider="stripe")
    account = await repo.get_gc_account(session, account_uuid)
    if account.status != "active":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="GC account is inactive",
        )
    return account


@router.post(
    "/{gc_account_id}/checkout-sessions",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout_session(
    gc_account_id: str,
    payload: CheckoutSessionRequest,
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CheckoutSessionResponse:
    account_uuid = parse_uuid(gc_account_id, "gc_account_id")
    await _active_account(session, account_uuid)

    checkout = await gateway.create_checkout_session(
        gc_account_id=account_uuid,
        price_id=payload.price_id,
        success_url=str(payload.success_url),
        cancel_url=str(payload.cancel_url),
        customer_email=payload.customer_email,
        customer_id=payload.customer_id,
    )
    return CheckoutSessionResponse(
        id=checkout["id"],
        url=checkout.get("url"),
        gc_account_id=account_uuid,
    )


@router.post(
    "/{gc_account_id}/invoices/{invoice_id}/checkout-sessions",
    response_model=InvoiceCheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_invoice_checkout_session(
    gc_account_id: str,
    invoice_id: str,
    payload: InvoiceCheckoutRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> InvoiceCheckoutResponse:
    account_uuid = parse_uuid(gc_account_id, "gc_account_id")
    invoice_uuid = parse_uuid(invoice_id, "invoice_id")
    await _active_account(session, account_uuid)

    invoice = await repo.get_invoice(session, invoice_uuid)
    if invoice is None or invoice.gc_account_id != account_uuid:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    if invoice.status != "pending_payment":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Invoice is {invoice.status}, not awaiting payment",
        )

    credential = await repo.get_credential_optional(
        session,
        gc_account_id=account_uuid,
        provider="stripe",
        environment=settings.environment,
    )
    if (
        credential is None
        or credential.revoked_at is not None
        or not credential.account_id.startswith("acct_")
    ):
        raise ReauthorizationRequired(
            "Stripe is not connected for this account",
            details={"provider": "stripe", "reauthorize": True},
        )

    checkout = await gateway.create_invoice_checkout_session(
        invoice=invoice,
        connected_account_id=credential.account_id,
        success_url=str(payload.success_url),
        cancel_url=str(payload.cancel_url),
        customer_email=payload.customer_email,
    )
    return InvoiceCheckoutResponse(
        id=checkout["id"],
        url=checkout.get("url"),
        gc_account_id=account_uuid,
        invoice_id=invoice_uuid,
    )
