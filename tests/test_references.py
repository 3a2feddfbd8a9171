from __future__ import annotations

import uuid
from datetime import timedelta

from sqlalchemy import func, select, update

from finsync.db import references
from finsync.db.models import ExternalReferences, SyncLogEntries
from finsync.utils.clock import as_utc, utcnow


async def count_references(session) -> int:
    result = await session.execute(select(func.count(ExternalReferences.id)))
    return int(result.scalar_one())


async def backdate(session, reference_id: uuid.UUID, seconds: int) -> None:
    await session.execute(
        update(ExternalReferences)
        .where(ExternalReferences.id == reference_id)
        .values(updated_at=utcnow() - timedelta(seconds=seconds))
    )
    await session.commit()


async def test_upsert_twice_keeps_one_row_with_latest_external_id(session, tenant):
    entity_id = uuid.uuid4()
    for external_id in ("CUST-1", "CUST-2"):
        await references.upsert(
            session,
            "qbo",
            "client",
            entity_id,
            gc_account_id=tenant.id,
            external_type="Customer",
            status="synced",
            external_id=external_id,
        )
    await session.commit()

    stored = await references.get(session, "qbo", "client", entity_id)
    assert await count_references(session) == 1
    assert stored is not None
    assert stored.external_entity_id == "CUST-2"
    assert stored.sync_status == "synced"


async def test_upsert_without_external_id_keeps_stored_id(session, tenant):
    entity_id = uuid.uuid4()
    await references.upsert(
        session, "qbo", "invoice", entity_id,
        gc_account_id=tenant.id, external_type="Invoice", status="synced", external_id="77",
    )
    await references.upsert(
        session, "qbo", "invoice", entity_id,
        gc_account_id=tenant.id, external_type="Invoice", status="error", error="boom",
    )
    await session.commit()

    stored = await references.get(session, "qbo", "invoice", entity_id)
    assert stored.external_entity_id == "77"
    assert stored.sync_status == "error"
    assert stored.error_message == "boom"


async def test_stale_pending_event_does_not_regress_synced(session, tenant):
    entity_id = uuid.uuid4()
    newer = utcnow()
    older = newer - timedelta(minutes=5)

    synced = await references.upsert(
        session, "stripe", "invoice", entity_id,
        gc_account_id=tenant.id, external_type="PaymentIntent", status="synced",
        external_id="pi_1", source_updated_at=newer,
    )
    stale = await references.upsert(
        session, "stripe", "invoice", entity_id,
        gc_account_id=tenant.id, external_type="PaymentIntent", status="pending",
        source_updated_at=older,
    )
    await session.commit()

    assert synced is not None
    assert stale is None
    stored = await references.get(session, "stripe", "invoice", entity_id)
    assert stored.sync_status == "synced"
    assert stored.external_entity_id == "pi_1"


async def test_same_version_pending_cannot_regress_synced(session, tenant):
    entity_id = uuid.uuid4()
    stamp = utcnow()
    await references.upsert(
        session, "qbo", "client", entity_id,
        gc_account_id=tenant.id, external_type="Customer", status="synced",
        external_id="5", source_updated_at=stamp,
    )

    result = await references.upsert(
        session, "qbo", "client", entity_id,
        gc_account_id=tenant.id, external_type="Customer", status="pending",
        source_updated_at=stamp,
    )

    assert result is None


async def test_newer_event_wins(session, tenant):
    entity_id = uuid.uuid4()
    first = utcnow() - timedelta(minutes=1)
    await references.upsert(
        session, "qbo", "invoice", entity_id,
        gc_account_id=tenant.id, external_type="Invoice", status="synced",
        external_id="12", source_updated_at=first,
    )

    result = await references.upsert(
        session, "qbo", "invoice", entity_id,
        gc_account_id=tenant.id, external_type="Invoice", status="error",
        error="Invoice deleted in QuickBooks", source_updated_at=first + timedelta(seconds=30),
    )
    await session.commit()

    assert result is not None
    assert result.sync_status == "error"
    assert as_utc(result.source_updated_at) == first + timedelta(seconds=30)


async def test_claim_blocks_second_caller_until_stale(session, tenant):
    entity_id = uuid.uuid4()
    kwargs = dict(gc_account_id=tenant.id, external_type="Customer", stale_after_seconds=60)

    first = await references.claim(session, "qbo", "client", entity_id, **kwargs)
    assert first is not None and first.sync_status == "pending"
    first_id = first.id
    await session.commit()
    second = await references.claim(session, "qbo", "client", entity_id, **kwargs)
    await session.rollback()

    assert second is None

    await backdate(session, first_id, 120)
    third = await references.claim(session, "qbo", "client", entity_id, **kwargs)
    await session.commit()
    assert third is not None
    assert third.id == first_id


async def test_mark_stale_only_flips_old_pending_rows(session, tenant):
    old_id, fresh_id = uuid.uuid4(), uuid.uuid4()
    kwargs = dict(gc_account_id=tenant.id, external_type="Customer", stale_after_seconds=60)
    old = await references.claim(session, "qbo", "client", old_id, **kwargs)
    fresh = await references.claim(session, "qbo", "client", fresh_id, **kwargs)
    await session.commit()
    await backdate(session, old.id, 300)

    pending = await references.list_pending(session, "qbo", 60)
    assert [reference.id for reference in pending] == [old.id]

    assert await references.mark_stale(session, old, older_than_seconds=60, error="sync interrupted")
    assert not await references.mark_stale(session, fresh, older_than_seconds=60, error="sync interrupted")
    await session.commit()

    await session.refresh(old)
    assert old.sync_status == "error"
    assert old.error_message == "sync interrupted"


async def test_append_log_redacts_secrets(session, tenant):
    reference = await references.upsert(
        session, "stripe", "client", uuid.uuid4(),
        gc_account_id=tenant.id, external_type="Customer", status="synced", external_id="cus_1",
    )

    entry = await references.append_log(
        session,
        provider="stripe",
        action="create",
        status="success",
        reference=reference,
        request_payload={"name": "Jane", "access_token": "sk_live_abcdef"},
    )
    await session.commit()

    stored = await session.get(SyncLogEntries, entry.id)
    assert stored.gc_account_id == tenant.id
    assert stored.request_payload["name"] == "Jane"
    assert stored.request_payload["access_token"] != "sk_live_abcdef"


async def test_find_and_delete_reference(session, tenant):
    entity_id = uuid.uuid4()
    reference = await references.upsert(
        session, "qbo", "invoice", entity_id,
        gc_account_id=tenant.id, external_type="Invoice", status="synced", external_id="130",
    )
    await session.commit()

    found = await references.find_by_external_id(
        session, "qbo", "Invoice", "130", gc_account_id=tenant.id
    )
    assert found.id == reference.id
    assert await references.find_by_external_id(
        session, "qbo", "Invoice", "130", gc_account_id=uuid.uuid4()
    ) is None

    await references.delete_reference(session, reference)
    await session.commit()
    assert await references.get(session, "qbo", "invoice", entity_id) is None
