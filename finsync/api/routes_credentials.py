from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.api.deps import get_gateways
from finsync.core import logging as logging_utils
from finsync.core.config import Settings, get_settings
from finsync.core.errors import ReauthorizationRequired
from finsync.core.security import mask_secret
from finsync.db import repo
from finsync.db.session import get_session
from finsync.schemas.credentials import (
    CredentialListResponse,
    CredentialRotateResponse,
    CredentialSummary,
)
from finsync.services.gateway import ProviderGateway
from finsync.utils.validators import parse_uuid, resolve_provider


router = APIRouter(prefix="/credentials", tags=["credentials"])
logger = logging.getLogger("finsync.api.credentials")


@router.get("/{gc_account_id}", response_model=CredentialListResponse)
async def list_credentials(
    gc_account_id: str,
    session: AsyncSession = Depends(get_session),
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
) -> CredentialListResponse:
    account_uuid = parse_uuid(gc_account_id, "gc_account_id")
    logging_utils.set_request_context(gc_account_id=str(account_uuid))
    await repo.get_gc_account(session, account_uuid)

    credentials = await repo.get_credentials(session, gc_account_id=account_uuid)
    summaries = []
    for credential in credentials:
        summary = CredentialSummary.model_validate(credential)
        summary.access_token_masked = mask_secret(credential.access_token)
        summary.token_state = gateways[credential.provider].token_state(credential)
        summaries.append(summary)
    return CredentialListResponse(gc_account_id=account_uuid, credentials=summaries)


@router.post("/{gc_account_id}/{provider}/rotate", response_model=CredentialRotateResponse)
async def rotate_credential(
    gc_account_id: str,
    provider: str,
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
) -> CredentialRotateResponse:
    account_uuid = parse_uuid(gc_account_id, "gc_account_id")
    provider_name = resolve_provider(provider)
    logging_utils.set_request_context(gc_account_id=str(account_uuid), provider=provider_name)
    await repo.get_gc_account(session, account_uuid)

    credential = await repo.get_credential_optional(
        session,
        gc_account_id=account_uuid,
        provider=provider_name,
        environment=settings.environment,
    )
    if credential is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credentials not found",
        )

    previous_counter = credential.refresh_counter
    try:
        await gateways[provider_name].rotate_credential(session, credential)
    except ReauthorizationRequired:
        # Keep last_error_at/revoked_at written by the gateway.
        await session.commit()
        raise
    await session.commit()

    logger.info(
        "credential_rotated",
        extra={
            "gc_account_id": str(account_uuid),
            "credential_id": str(credential.id),
            "refresh_counter": credential.refresh_counter,
        },
    )
    return CredentialRotateResponse(
        gc_account_id=account_uuid,
        credential_id=credential.id,
        provider=provider_name,
        refreshed=credential.refresh_counter > previous_counter,
        refresh_counter=credential.refresh_counter,
        access_expires_at=credential.access_expires_at,
    )
