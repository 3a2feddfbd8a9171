from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.api.deps import get_gateways
from finsync.core import logging as logging_utils
from finsync.core.config import Settings, get_settings
from finsync.db.session import get_session
from finsync.services.gateway import ProviderGateway
from finsync.services.webhooks import WebhookIngestor
from finsync.utils.validators import resolve_provider


router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("finsync.api.webhooks")


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
) -> dict[str, object]:
    provider_name = resolve_provider(provider)
    logging_utils.set_request_context(provider=provider_name)
    raw_body = await request.body()

    ingestor = WebhookIngestor(session, settings, gateways)
    outcome = await ingestor.ingest(provider_name, raw_body, request.headers)
    logger.info(
        "webhook_processed",
        extra={
            "applied": len(outcome.applied),
            "ignored": len(outcome.ignored),
            "duplicates": len(outcome.duplicates),
        },
    )
    return {
        "received": True,
        "applied": outcome.applied,
        "ignored": outcome.ignored,
        "duplicates": outcome.duplicates,
    }
