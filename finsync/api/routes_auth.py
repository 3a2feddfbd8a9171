from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.api.deps import get_gateways
from finsync.core import logging as logging_utils
from finsync.core.config import Settings, get_settings
from finsync.core.errors import SyncError
from finsync.core.security import decode_oauth_state, encode_oauth_state
from finsync.db import repo
from finsync.db.session import get_session
from finsync.schemas.credentials import OAuthCallbackResponse
from finsync.services.gateway import ProviderGateway, TokenBundle
from finsync.services.qbo_gateway import QuickBooksGateway
from finsync.utils.validators import parse_uuid, resolve_environment, resolve_provider


router = APIRouter(prefix="/auth", tags=["auth"])
public_router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("finsync.api.auth")


@router.get("/{provider}/connect", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def connect_oauth(
    provider: str,
    gc_account_id: str,
    env: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
):
    provider_name = resolve_provider(provider)
    account_uuid = parse_uuid(gc_account_id, "gc_account_id")
    environment = resolve_environment(env, settings.environment)
    logging_utils.set_request_context(gc_account_id=str(account_uuid), provider=provider_name)

    account = await repo.get_gc_account(session, account_uuid)
    if account.status != "active":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="GC account is inactive",
        )

    state_payload = {
        "gc_account_id": str(account_uuid),
        "provider": provider_name,
        "environment": environment,
        "nonce": str(uuid.uuid4()),
    }
    state = encode_oauth_state(settings.fernet_key, state_payload)

    gateway = gateways[provider_name]
    auth_url = gateway.build_authorization_url(state=state, environment=environment)
    logger.info(
        "oauth_connect_redirect",
        extra={"gc_account_id": str(account_uuid), "environment": environment},
    )
    return RedirectResponse(auth_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@public_router.get("/{provider}/callback", response_model=OAuthCallbackResponse)
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    realmId: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
) -> OAuthCallbackResponse:
    provider_name = resolve_provider(provider)
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {error_description or error}",
        )
    if not code or not state or (provider_name == "qbo" and not realmId):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth parameters",
        )

    try:
        state_payload = decode_oauth_state(settings.fernet_key, state)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    if state_payload.get("provider") != provider_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="OAuth state was issued for a different provider",
        )

    account_uuid = parse_uuid(state_payload.get("gc_account_id", ""), "gc_account_id")
    environment = resolve_environment(state_payload.get("environment"), settings.environment)
    logging_utils.set_request_context(gc_account_id=str(account_uuid), provider=provider_name)

    await repo.get_gc_account(session, account_uuid)
    gateway = gateways[provider_name]

    try:
        bundle: TokenBundle
        if isinstance(gateway, QuickBooksGateway):
            bundle = await gateway.exchange_authorization_code(code=code, realm_id=realmId or "")
        else:
            bundle = await gateway.exchange_authorization_code(code=code)
    except SyncError as exc:
        logger.error(
            "oauth_exchange_failed",
            extra={
                "gc_account_id": str(account_uuid),
                "environment": environment,
                "error": exc.message,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to exchange authorization code",
        ) from exc

    account_id = bundle.account_id or realmId
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Provider did not return an account id",
        )

    credential = await gateway.store_credentials(
        session,
        gc_account_id=account_uuid,
        environment=environment,
        account_id=account_id,
        bundle=bundle,
    )
    await session.commit()

    logger.info(
        "oauth_callback_completed",
        extra={
            "gc_account_id": str(account_uuid),
            "account_id": account_id,
            "environment": environment,
        },
    )
    return OAuthCallbackResponse(
        gc_account_id=account_uuid,
        provider=provider_name,
        credential_id=credential.id,
        account_id=account_id,
        environment=environment,
        access_expires_at=credential.access_expires_at,
        scopes=credential.scopes,
    )
