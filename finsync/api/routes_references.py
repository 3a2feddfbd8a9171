from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.api.deps import get_gateways
from finsync.core.config import Settings, get_settings
from finsync.db import references
from finsync.db.session import get_session
from finsync.schemas.sync import ReconcileResponse, ReferenceListResponse, ReferenceRead
from finsync.services.gateway import ProviderGateway
from finsync.services.sync import SyncOrchestrator
from finsync.utils.validators import (
    normalize_older_than,
    parse_uuid,
    resolve_entity_type,
    resolve_provider,
)


router = APIRouter(prefix="/references", tags=["references"])
logger = logging.getLogger("finsync.api.references")


@router.get("/pending", response_model=list[ReferenceRead])
async def list_pending_references(
    provider: str = Query(...),
    older_than: Optional[int] = Query(default=None, description="Seconds a reference has been pending."),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> list[ReferenceRead]:
    provider_name = resolve_provider(provider)
    threshold = normalize_older_than(older_than, settings.sync_stale_seconds)
    pending = await references.list_pending(session, provider_name, threshold)
    return [ReferenceRead.model_validate(reference) for reference in pending]


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_references(
    provider: str = Query(...),
    older_than: Optional[int] = Query(default=None),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
) -> ReconcileResponse:
    provider_name = resolve_provider(provider)
    threshold = normalize_older_than(older_than, settings.sync_stale_seconds)
    orchestrator = SyncOrchestrator(session, gateways, settings)
    reconciled = await orchestrator.reconcile_stale(provider_name, threshold)
    logger.info(
        "references_reconciled",
        extra={"provider": provider_name, "count": len(reconciled), "older_than": threshold},
    )
    return ReconcileResponse(
        provider=provider_name,
        older_than_seconds=threshold,
        reconciled=len(reconciled),
        references=[ReferenceRead.model_validate(reference) for reference in reconciled],
    )


@router.get("/{entity_type}/{entity_id}", response_model=ReferenceListResponse)
async def get_entity_references(
    entity_type: str,
    entity_id: str,
    session: AsyncSession = Depends(get_session),
) -> ReferenceListResponse:
    entity_kind = resolve_entity_type(entity_type)
    entity_uuid = parse_uuid(entity_id, "entity_id")
    rows = await references.list_for_entity(session, entity_kind, entity_uuid)
    return ReferenceListResponse(
        entity_type=entity_kind,
        entity_id=entity_uuid,
        references=[ReferenceRead.model_validate(row) for row in rows],
    )
