"""Push local records to QBO or Stripe.

``SyncOrchestrator.sync_entity`` claims the entity's reference, makes sure its
dependencies (customer/vendor, GL account, linked invoice or bill) exist on the
provider, maps it and calls the gateway. Every outcome is written to the
reference row and the sync log before the call returns or raises.
"""
from __future__ import annotations

import logging
import uuid
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.config import Settings, get_settings
from finsync.core.errors import (
    AlreadyInProgress,
    ReauthorizationRequired,
    ReconciliationConflict,
    SyncError,
    ValidationError,
)
from finsync.core.logging import log_sync_finished, log_sync_started, tenant_context
from finsync.db import references, repo
from finsync.db.models import ENTITY_TYPES, ExternalReferences, ProviderCredentials
from finsync.schemas.entities import EntitySnapshot, PaymentSnapshot, snapshot_from_row
from finsync.services.gateway import ProviderGateway, ProviderResponse, idempotency_key_for
from finsync.services.mapper import ExternalPayload, map_to_external, resolve_target
from finsync.utils.clock import utcnow

logger = logging.getLogger("finsync.services.sync")

INTERRUPTED_MESSAGE = "sync interrupted"


class SyncOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        gateways: Mapping[str, ProviderGateway],
        settings: Settings | None = None,
    ):
        self.session = session
        self.gateways = gateways
        self.settings = settings or get_settings()

    async def sync_entity(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        provider: str,
    ) -> ExternalReferences:
        return await self._sync(entity_type, entity_id, provider, chain=())

    async def unsync(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        provider: str,
    ) -> Optional[ExternalReferences]:
        """Forget the provider link for an entity. The remote record is left alone."""
        self._gateway(provider)
        reference = await references.get(self.session, provider, entity_type, entity_id)
        if reference is None:
            return None
        if reference.sync_status == "pending":
            raise AlreadyInProgress(
                f"{entity_type} {entity_id} is being synced to {provider}",
                details={"provider": provider, "entity_type": entity_type},
            )
        await references.append_log(
            self.session,
            provider=provider,
            action="unsync",
            status="success",
            gc_account_id=reference.gc_account_id,
            request_payload={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "external_id": reference.external_entity_id,
            },
        )
        await references.delete_reference(self.session, reference)
        await self.session.commit()
        logger.info(
            "reference_unsynced",
            extra={
                "provider": provider,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "external_id": reference.external_entity_id,
            },
        )
        return reference

    async def reconcile_stale(
        self,
        provider: str,
        older_than_seconds: Optional[int] = None,
    ) -> list[ExternalReferences]:
        """Mark ``pending`` references abandoned by a crashed sync as ``error``."""
        threshold = (
            older_than_seconds
            if older_than_seconds is not None
            else self.settings.sync_stale_seconds
        )
        stale = await references.list_pending(self.session, provider, threshold)
        reconciled: list[ExternalReferences] = []
        for reference in stale:
            flipped = await references.mark_stale(
                self.session,
                reference,
                older_than_seconds=threshold,
                error=INTERRUPTED_MESSAGE,
            )
            if not flipped:
                continue
            await references.append_log(
                self.session,
                provider=provider,
                action="reconcile",
                status="success",
                reference=reference,
                error=INTERRUPTED_MESSAGE,
            )
            reconciled.append(reference)
        await self.session.commit()
        for reference in reconciled:
            await self.session.refresh(reference)
        if reconciled:
            logger.warning(
                "stale_references_reconciled",
                extra={"provider": provider, "count": len(reconciled)},
            )
        return reconciled

    # Internals

    def _gateway(self, provider: str) -> ProviderGateway:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ValidationError(f"Unknown provider: {provider}", details={"provider": provider})
        return gateway

    async def _load(self, entity_type: str, entity_id: uuid.UUID) -> EntitySnapshot:
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(
                f"Unknown entity type: {entity_type}",
                details={"entity_type": entity_type},
            )
        row = await repo.get_local_entity(self.session, entity_type, entity_id)
        if row is None:
            raise ValidationError(
                f"{entity_type} {entity_id} not found",
                details={"entity_type": entity_type, "entity_id": str(entity_id)},
            )
        return snapshot_from_row(entity_type, row)

    async def _credential(self, provider: str, gc_account_id: uuid.UUID) -> ProviderCredentials:
        credential = await repo.get_credential_optional(
            self.session,
            gc_account_id=gc_account_id,
            provider=provider,
            environment=self.settings.environment,
        )
        if credential is None:
            raise ReauthorizationRequired(
                f"{provider} is not connected for this account",
                details={"provider": provider, "reauthorize": True},
            )
        return credential

    async def _sync(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        provider: str,
        *,
        chain: tuple[tuple[str, uuid.UUID], ...],
    ) -> ExternalReferences:
        gateway = self._gateway(provider)
        entity = await self._load(entity_type, entity_id)
        tenant = await repo.get_gc_account_optional(self.session, entity.gc_account_id)
        if tenant is None or tenant.status != "active":
            raise ValidationError(
                "GC account is missing or inactive",
                details={"gc_account_id": str(entity.gc_account_id)},
            )
        with tenant_context(str(entity.gc_account_id), provider):
            return await self._push(gateway, entity, provider, chain=chain)

    async def _push(
        self,
        gateway: ProviderGateway,
        entity: EntitySnapshot,
        provider: str,
        *,
        chain: tuple[tuple[str, uuid.UUID], ...],
    ) -> ExternalReferences:
        entity_type, entity_id = entity.entity_type, entity.id
        _, external_type = resolve_target(provider, entity)
        credential = await self._credential(provider, entity.gc_account_id)

        claimed = await references.claim(
            self.session,
            provider,
            entity_type,
            entity_id,
            gc_account_id=entity.gc_account_id,
            external_type=external_type,
            stale_after_seconds=self.settings.sync_stale_seconds,
        )
        if claimed is None:
            await self.session.rollback()
            raise AlreadyInProgress(
                f"{entity_type} {entity_id} is already being synced to {provider}",
                details={"provider": provider, "entity_type": entity_type},
            )
        existing_external_id = claimed.external_entity_id
        await self.session.commit()

        action = "update" if existing_external_id else "create"
        payload: Optional[ExternalPayload] = None
        response: Optional[ProviderResponse] = None
        try:
            payload = await self._build_payload(
                provider, entity, chain=chain + ((entity_type, entity_id),)
            )
            log_sync_started(
                provider=provider,
                entity_type=entity_type,
                entity_id=str(entity_id),
                external_id=existing_external_id,
                action=action,
                payload=payload.body,
            )
            if existing_external_id:
                response = await gateway.update(
                    self.session, credential, existing_external_id, payload
                )
            else:
                response = await gateway.create(
                    self.session,
                    credential,
                    payload,
                    idempotency_key=idempotency_key_for(payload, entity_type, entity_id),
                )
            if not response.external_id:
                raise ValidationError(
                    f"{provider} response did not include an id",
                    details={"provider": provider, "status": response.status_code},
                )

            reference = await references.upsert(
                self.session,
                provider,
                entity_type,
                entity_id,
                gc_account_id=entity.gc_account_id,
                external_type=payload.external_entity_type,
                status="synced",
                external_id=response.external_id,
                source_updated_at=response.source_updated_at or utcnow(),
            )
            if reference is None:
                return await self._keep_newer(
                    claimed, entity, action=action, payload=payload, response=response
                )
            await references.append_log(
                self.session,
                provider=provider,
                action=action,
                status="success",
                reference=reference,
                request_payload=payload.body,
                response_payload=response.payload,
            )
            await self.session.commit()
        except SyncError as exc:
            await self._record_failure(
                provider,
                entity,
                external_type=payload.external_entity_type if payload else external_type,
                external_id=response.external_id if response else None,
                action=action,
                error=exc,
                request_payload=payload.body if payload else None,
            )
            raise
        except Exception as exc:
            await self.session.rollback()
            await self._record_failure(
                provider,
                entity,
                external_type=payload.external_entity_type if payload else external_type,
                external_id=response.external_id if response else None,
                action=action,
                error=exc,
                request_payload=payload.body if payload else None,
            )
            raise

        log_sync_finished(
            provider=provider,
            entity_type=entity_type,
            entity_id=str(entity_id),
            external_id=reference.external_entity_id,
            action=action,
            provider_status_code=response.status_code,
            latency_ms=response.latency_ms,
            result="success",
        )
        return reference

    async def _keep_newer(
        self,
        claimed: ExternalReferences,
        entity: EntitySnapshot,
        *,
        action: str,
        payload: ExternalPayload,
        response: ProviderResponse,
    ) -> ExternalReferences:
        """The provider took the write but the stored reference is newer; leave it in place."""
        provider = claimed.provider
        await self.session.refresh(claimed)
        stored = claimed
        if stored.sync_status == "pending":
            # Still our claim: hand it back without moving the stored version.
            released = await references.upsert(
                self.session,
                provider,
                entity.entity_type,
                entity.id,
                gc_account_id=entity.gc_account_id,
                external_type=payload.external_entity_type,
                status="synced",
                external_id=None if stored.external_entity_id else response.external_id,
            )
            stored = released or stored
        message = f"A newer change to {entity.entity_type} {entity.id} was recorded meanwhile"
        await references.append_log(
            self.session,
            provider=provider,
            action=action,
            status="ignored",
            reference=stored,
            request_payload=payload.body,
            response_payload=response.payload,
            error=message,
        )
        await self.session.commit()
        logger.warning(
            "sync_conflict_dropped",
            extra={
                "provider": provider,
                "entity_type": entity.entity_type,
                "entity_id": str(entity.id),
                "error_code": ReconciliationConflict.code,
            },
        )
        log_sync_finished(
            provider=provider,
            entity_type=entity.entity_type,
            entity_id=str(entity.id),
            external_id=stored.external_entity_id,
            action=action,
            provider_status_code=response.status_code,
            latency_ms=response.latency_ms,
            result="conflict",
            error_code=ReconciliationConflict.code,
            error_message=message,
        )
        return stored

    async def _record_failure(
        self,
        provider: str,
        entity: EntitySnapshot,
        *,
        external_type: str,
        external_id: Optional[str],
        action: str,
        error: Exception,
        request_payload: Optional[dict],
    ) -> None:
        message = error.message if isinstance(error, SyncError) else str(error) or error.__class__.__name__
        code = error.code if isinstance(error, SyncError) else "internal_error"
        reference = await references.upsert(
            self.session,
            provider,
            entity.entity_type,
            entity.id,
            gc_account_id=entity.gc_account_id,
            external_type=external_type,
            status="error",
            external_id=external_id,
            error=message,
        )
        await references.append_log(
            self.session,
            provider=provider,
            action=action,
            status="error",
            reference=reference,
            gc_account_id=entity.gc_account_id,
            request_payload=request_payload,
            error=message,
        )
        await self.session.commit()
        details = error.details if isinstance(error, SyncError) else {}
        log_sync_finished(
            provider=provider,
            entity_type=entity.entity_type,
            entity_id=str(entity.id),
            external_id=external_id,
            action=action,
            provider_status_code=details.get("status"),
            latency_ms=None,
            result="error",
            error_code=code,
            error_message=message,
        )

    async def _build_payload(
        self,
        provider: str,
        entity: EntitySnapshot,
        *,
        chain: tuple[tuple[str, uuid.UUID], ...],
    ) -> ExternalPayload:
        counterpart_id: Optional[str] = None
        gl_ref: Optional[str] = None
        linked_id: Optional[str] = None

        if isinstance(entity, PaymentSnapshot):
            linked = entity.linked_document()
            if linked is None:
                raise ValidationError("Payment is not linked to an invoice or expense")
            linked_type, linked_local_id = linked
            linked_id = await self._dependency(provider, linked_type, linked_local_id, chain)
            document = await self._load(linked_type, linked_local_id)
            counterpart = document.counterpart()
        else:
            counterpart = entity.counterpart()

        if counterpart is not None:
            counterpart_type, counterpart_local_id = counterpart
            counterpart_id = await self._dependency(
                provider, counterpart_type, counterpart_local_id, chain
            )

        if provider == "qbo":
            gl_ref = await self._gl_reference(entity, chain)

        return map_to_external(
            provider,
            entity,
            counterpart_id,
            gl_ref,
            linked_external_id=linked_id,
        )

    async def _gl_reference(
        self,
        entity: EntitySnapshot,
        chain: tuple[tuple[str, uuid.UUID], ...],
    ) -> Optional[str]:
        if entity.entity_type == "invoice":
            # QBO invoice lines reference an Item, not an Account.
            return self.settings.qbo_default_income_item
        if entity.entity_type == "payment":
            return self.settings.qbo_default_deposit_account
        gl_account_id = entity.gl_account()
        if gl_account_id is not None:
            return await self._dependency("qbo", "account", gl_account_id, chain)
        if entity.entity_type == "expense":
            return self.settings.qbo_default_expense_account
        return None

    async def _dependency(
        self,
        provider: str,
        entity_type: str,
        entity_id: uuid.UUID,
        chain: tuple[tuple[str, uuid.UUID], ...],
    ) -> str:
        """External id of a record this entity points at, syncing it first if needed."""
        reference = await references.get(self.session, provider, entity_type, entity_id)
        if reference is not None and reference.sync_status == "synced" and reference.external_entity_id:
            return reference.external_entity_id
        if (entity_type, entity_id) in chain:
            raise ValidationError(
                f"Circular dependency while syncing {entity_type} {entity_id}",
                details={"provider": provider, "entity_type": entity_type},
            )
        logger.info(
            "sync_dependency_started",
            extra={"provider": provider, "entity_type": entity_type, "entity_id": str(entity_id)},
        )
        try:
            synced = await self._sync(entity_type, entity_id, provider, chain=chain)
        except SyncError as exc:
            raise type(exc)(
                f"Could not sync dependent {entity_type}: {exc.message}",
                details={**exc.details, "dependency": entity_type},
            ) from exc
        return synced.external_entity_id
