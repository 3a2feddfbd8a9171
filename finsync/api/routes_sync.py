from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.api.deps import get_gateways
from finsync.core import logging as logging_utils
from finsync.core.config import Settings, get_settings
from finsync.db.session import get_session
from finsync.schemas.sync import SyncRequest, SyncResult
from finsync.services.gateway import ProviderGateway
from finsync.services.sync import SyncOrchestrator
from finsync.utils.validators import parse_uuid, resolve_entity_type, resolve_provider


router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("finsync.api.sync")


@router.post("/{entity_type}/{entity_id}", response_model=SyncResult)
async def sync_entity(
    entity_type: str,
    entity_id: str,
    payload: SyncRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
) -> SyncResult:
    entity_kind = resolve_entity_type(entity_type)
    entity_uuid = parse_uuid(entity_id, "entity_id")
    logging_utils.set_request_context(provider=payload.provider)

    orchestrator = SyncOrchestrator(session, gateways, settings)
    reference = await orchestrator.sync_entity(entity_kind, entity_uuid, payload.provider)
    logger.info(
        "sync_completed",
        extra={
            "entity_type": entity_kind,
            "entity_id": str(entity_uuid),
            "external_id": reference.external_entity_id,
        },
    )
    return SyncResult(
        status=reference.sync_status,
        external_id=reference.external_entity_id,
        external_entity_type=reference.external_entity_type,
        reference_id=reference.id,
    )


@router.delete("/{entity_type}/{entity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unsync_entity(
    entity_type: str,
    entity_id: str,
    provider: str = Query(...),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
) -> Response:
    entity_kind = resolve_entity_type(entity_type)
    entity_uuid = parse_uuid(entity_id, "entity_id")
    provider_name = resolve_provider(provider)
    logging_utils.set_request_context(provider=provider_name)

    orchestrator = SyncOrchestrator(session, gateways, settings)
    await orchestrator.unsync(entity_kind, entity_uuid, provider_name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
