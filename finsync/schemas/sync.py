from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from finsync.schemas.entities import Provider, SyncStatus


class SyncRequest(BaseModel):
    provider: Provider


class SyncResult(BaseModel):
    status: SyncStatus
    external_id: Optional[str] = None
    external_entity_type: Optional[str] = None
    reference_id: uuid.UUID


class ReferenceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    gc_account_id: uuid.UUID
    provider: Provider
    local_entity_type: str
    local_entity_id: uuid.UUID
    external_entity_id: Optional[str] = None
    external_entity_type: Optional[str] = None
    sync_status: SyncStatus
    error_message: Optional[str] = None
    source_updated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ReferenceListResponse(BaseModel):
    entity_type: str
    entity_id: uuid.UUID
    references: list[ReferenceRead]


class ReconcileResponse(BaseModel):
    provider: Provider
    older_than_seconds: int
    reconciled: int
    references: list[ReferenceRead] = Field(default_factory=list)
