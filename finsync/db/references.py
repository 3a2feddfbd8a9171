"""Reference store: which local entity maps to which provider record.

Every write is a single ``INSERT ... ON CONFLICT`` statement keyed on the
``(provider, local_entity_type, local_entity_id)`` unique constraint, so two
requests racing on the same entity are arbitrated by the database.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from sqlalchemy import and_, delete, func, not_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.logging import sanitize_payload
from finsync.db.models import ExternalReferences, SyncLogEntries
from finsync.utils.clock import utcnow

_CONFLICT_KEY = ["provider", "local_entity_type", "local_entity_id"]


def dialect_insert(session: AsyncSession):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")


async def get(
    session: AsyncSession,
    provider: str,
    entity_type: str,
    entity_id: uuid.UUID,
) -> Optional[ExternalReferences]:
    result = await session.execute(
        select(ExternalReferences).where(
            ExternalReferences.provider == provider,
            ExternalReferences.local_entity_type == entity_type,
            ExternalReferences.local_entity_id == entity_id,
        )
    )
    return result.scalar_one_or_none()


async def upsert(
    session: AsyncSession,
    provider: str,
    entity_type: str,
    entity_id: uuid.UUID,
    *,
    gc_account_id: uuid.UUID,
    external_type: str,
    status: str,
    external_id: Optional[str] = None,
    error: Optional[str] = None,
    source_updated_at: Optional[datetime] = None,
) -> Optional[ExternalReferences]:
    """Insert or update the reference for an entity.

    The stored row is replaced only when ``source_updated_at`` is newer than
    the stored one, or equal (or unknown) and the write is not a
    ``synced -> pending`` regression. ``external_id=None`` keeps the stored id.
    Returns ``None`` when the stored row wins.
    """
    now = utcnow()
    insert = dialect_insert(session)
    stmt = insert(ExternalReferences).values(
        id=uuid.uuid4(),
        gc_account_id=gc_account_id,
        provider=provider,
        local_entity_type=entity_type,
        local_entity_id=entity_id,
        external_entity_id=external_id,
        external_entity_type=external_type,
        sync_status=status,
        error_message=error,
        source_updated_at=source_updated_at,
        created_at=now,
        updated_at=now,
    )
    incoming = stmt.excluded
    stored = ExternalReferences.__table__.c

    strictly_newer = and_(
        incoming.source_updated_at.is_not(None),
        or_(
            stored.source_updated_at.is_(None),
            incoming.source_updated_at > stored.source_updated_at,
        ),
    )
    same_version = or_(
        incoming.source_updated_at.is_(None),
        incoming.source_updated_at == stored.source_updated_at,
    )
    regression = and_(stored.sync_status == "synced", incoming.sync_status == "pending")

    stmt = stmt.on_conflict_do_update(
        index_elements=_CONFLICT_KEY,
        set_={
            "sync_status": incoming.sync_status,
            "error_message": incoming.error_message,
            "external_entity_id": func.coalesce(
                incoming.external_entity_id, stored.external_entity_id
            ),
            "external_entity_type": incoming.external_entity_type,
            "source_updated_at": func.coalesce(
                incoming.source_updated_at, stored.source_updated_at
            ),
            "updated_at": now,
        },
        where=or_(strictly_newer, and_(same_version, not_(regression))),
    ).returning(ExternalReferences)

    result = await session.execute(stmt, execution_options={"populate_existing": True})
    return result.scalar_one_or_none()


async def claim(
    session: AsyncSession,
    provider: str,
    entity_type: str,
    entity_id: uuid.UUID,
    *,
    gc_account_id: uuid.UUID,
    external_type: str,
    stale_after_seconds: int,
) -> Optional[ExternalReferences]:
    """Move the reference to ``pending`` unless a fresh sync already holds it.

    Returns ``None`` when another caller holds a ``pending`` claim younger
    than ``stale_after_seconds``.
    """
    now = utcnow()
    cutoff = now - timedelta(seconds=stale_after_seconds)
    insert = dialect_insert(session)
    stmt = insert(ExternalReferences).values(
        id=uuid.uuid4(),
        gc_account_id=gc_account_id,
        provider=provider,
        local_entity_type=entity_type,
        local_entity_id=entity_id,
        external_entity_id=None,
        external_entity_type=external_type,
        sync_status="pending",
        error_message=None,
        created_at=now,
        updated_at=now,
    )
    stored = ExternalReferences.__table__.c
    stmt = stmt.on_conflict_do_update(
        index_elements=_CONFLICT_KEY,
        set_={
            "sync_status": "pending",
            "error_message": None,
            "updated_at": now,
        },
        where=or_(stored.sync_status != "pending", stored.updated_at < cutoff),
    ).returning(ExternalReferences)

    result = await session.execute(stmt, execution_options={"populate_existing": True})
    return result.scalar_one_or_none()


async def list_pending(
    session: AsyncSession,
    provider: str,
    older_than_seconds: int,
) -> Sequence[ExternalReferences]:
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    result = await session.execute(
        select(ExternalReferences)
        .where(
            ExternalReferences.provider == provider,
            ExternalReferences.sync_status == "pending",
            ExternalReferences.updated_at < cutoff,
        )
        .order_by(ExternalReferences.updated_at.asc())
    )
    return result.scalars().all()


async def list_for_entity(
    session: AsyncSession,
    entity_type: str,
    entity_id: uuid.UUID,
) -> Sequence[ExternalReferences]:
    result = await session.execute(
        select(ExternalReferences)
        .where(
            ExternalReferences.local_entity_type == entity_type,
            ExternalReferences.local_entity_id == entity_id,
        )
        .order_by(ExternalReferences.provider)
    )
    return result.scalars().all()


async def find_by_external_id(
    session: AsyncSession,
    provider: str,
    external_type: str,
    external_id: str,
    *,
    gc_account_id: uuid.UUID,
) -> Optional[ExternalReferences]:
    """Provider ids are only unique within one provider account, so the tenant is required."""
    result = await session.execute(
        select(ExternalReferences).where(
            ExternalReferences.gc_account_id == gc_account_id,
            ExternalReferences.provider == provider,
            ExternalReferences.external_entity_type == external_type,
            ExternalReferences.external_entity_id == external_id,
        )
    )
    return result.scalars().first()


async def delete_reference(session: AsyncSession, reference: ExternalReferences) -> None:
    await session.execute(
        delete(ExternalReferences).where(ExternalReferences.id == reference.id)
    )


async def append_log(
    session: AsyncSession,
    *,
    provider: str,
    action: str,
    status: str,
    reference: Optional[ExternalReferences] = None,
    gc_account_id: Optional[uuid.UUID] = None,
    request_payload: Any = None,
    response_payload: Any = None,
    error: Optional[str] = None,
) -> SyncLogEntries:
    entry = SyncLogEntries(
        reference_id=reference.id if reference is not None else None,
        gc_account_id=gc_account_id
        if gc_account_id is not None
        else (reference.gc_account_id if reference is not None else None),
        provider=provider,
        action=action,
        status=status,
        request_payload=_as_json_object(request_payload),
        response_payload=_as_json_object(response_payload),
        error_message=error,
    )
    session.add(entry)
    await session.flush()
    return entry


def _as_json_object(payload: Any) -> Optional[dict[str, Any]]:
    if payload is None:
        return None
    sanitized = sanitize_payload(payload)
    if isinstance(sanitized, dict):
        return sanitized
    return {"value": sanitized}


async def mark_stale(
    session: AsyncSession,
    reference: ExternalReferences,
    *,
    older_than_seconds: int,
    error: str,
) -> bool:
    """Flip a stuck ``pending`` row to ``error``; False if it moved on meanwhile."""
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    result = await session.execute(
        update(ExternalReferences)
        .where(
            ExternalReferences.id == reference.id,
            ExternalReferences.sync_status == "pending",
            ExternalReferences.updated_at < cutoff,
        )
        .values(sync_status="error", error_message=error, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
