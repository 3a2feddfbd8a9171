"""QuickBooks Online ``dataChangeEvent`` handlers.

Intuit notifications only say *which* entity changed; when the change matters
(a new Payment against one of our invoices) the entity is fetched through the
gateway with the realm's credential.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.errors import ReconciliationConflict, ValidationError
from finsync.db import references, repo
from finsync.db.models import ProviderCredentials
from finsync.services.gateway import ProviderGateway
from finsync.services.mapper import map_from_external_payment
from finsync.utils.clock import parse_iso_datetime
from finsync.utils.hashing import composite_id

logger = logging.getLogger("finsync.services.qbo_handlers")

DELETE_OPERATIONS = {"Delete": "deleted", "Void": "voided"}
CHANGE_OPERATIONS = {"Create", "Update", "Merge", "Emailed"}


@dataclass(frozen=True)
class EntityChange:
    realm_id: str
    name: str
    entity_id: str
    operation: str
    last_updated: Optional[datetime]
    raw: dict[str, Any]

    @property
    def event_id(self) -> str:
        # Intuit notifications carry no id of their own.
        stamp = self.raw.get("lastUpdated") or ""
        return composite_id(self.realm_id, self.name, self.entity_id, self.operation, stamp)

    @property
    def event_type(self) -> str:
        return f"{self.name}.{self.operation}"


def parse_notifications(payload: dict[str, Any]) -> list[EntityChange]:
    changes: list[EntityChange] = []
    for notification in payload.get("eventNotifications") or []:
        realm_id = str(notification.get("realmId") or "")
        entities = (notification.get("dataChangeEvent") or {}).get("entities") or []
        for entity in entities:
            if not isinstance(entity, dict) or not entity.get("name") or not entity.get("id"):
                continue
            changes.append(
                EntityChange(
                    realm_id=realm_id,
                    name=str(entity["name"]),
                    entity_id=str(entity["id"]),
                    operation=str(entity.get("operation") or ""),
                    last_updated=parse_iso_datetime(entity.get("lastUpdated")),
                    raw=entity,
                )
            )
    return changes


async def handle_entity_change(
    session: AsyncSession,
    change: EntityChange,
    gateway: ProviderGateway,
) -> Optional[str]:
    credential = await repo.get_credential_by_account(session, provider="qbo", account_id=change.realm_id)
    if credential is None:
        raise ValidationError("Unknown QBO realm", details={"realm_id": change.realm_id})

    reference = await references.find_by_external_id(
        session, "qbo", change.name, change.entity_id, gc_account_id=credential.gc_account_id
    )
    if reference is None:
        if change.name == "Payment" and change.operation == "Create":
            return await _apply_payment(session, change, credential, gateway)
        return "no local reference"

    if change.operation in DELETE_OPERATIONS:
        status, error = "error", f"{change.name} {DELETE_OPERATIONS[change.operation]} in QuickBooks"
    elif change.operation in CHANGE_OPERATIONS:
        status, error = "synced", None
    else:
        return f"unhandled operation {change.operation}"

    updated = await references.upsert(
        session,
        "qbo",
        reference.local_entity_type,
        reference.local_entity_id,
        gc_account_id=reference.gc_account_id,
        external_type=change.name,
        status=status,
        error=error,
        source_updated_at=change.last_updated,
    )
    if updated is None:
        raise ReconciliationConflict(
            f"{change.name} {change.entity_id} has a newer recorded change",
            details={"entity": change.name, "external_id": change.entity_id, "operation": change.operation},
        )
    await references.append_log(
        session,
        provider="qbo",
        action="webhook",
        status="success" if status == "synced" else "error",
        reference=updated,
        request_payload=change.raw,
        error=error,
    )
    return None


async def _apply_payment(
    session: AsyncSession,
    change: EntityChange,
    credential: ProviderCredentials,
    gateway: ProviderGateway,
) -> Optional[str]:
    payload = await gateway.fetch(session, credential, "payment", change.entity_id)
    payment = payload.get("Payment") or {}
    update = map_from_external_payment("qbo", payload, object_type="Payment")

    invoice_ids: list[uuid.UUID] = []
    for line in payment.get("Line") or []:
        for linked in line.get("LinkedTxn") or []:
            if linked.get("TxnType") != "Invoice":
                continue
            invoice_ref = await references.find_by_external_id(
                session,
                "qbo",
                "Invoice",
                str(linked.get("TxnId")),
                gc_account_id=credential.gc_account_id,
            )
            if invoice_ref is not None:
                invoice_ids.append(invoice_ref.local_entity_id)
    if not invoice_ids and update.local_entity_id is not None:
        invoice_ids.append(update.local_entity_id)
    if not invoice_ids:
        return "payment not linked to a synced invoice"

    for invoice_id in invoice_ids:
        invoice = await repo.get_invoice(session, invoice_id)
        if invoice is None or invoice.gc_account_id != credential.gc_account_id:
            logger.warning(
                "qbo_payment_invoice_skipped",
                extra={"payment_id": change.entity_id, "invoice_id": str(invoice_id)},
            )
            continue
        marked = await repo.mark_invoice_paid(
            session,
            invoice_id,
            payment_reference=update.payment_reference,
            paid_at=update.paid_at or change.last_updated,
            payment_method=update.payment_method or "transfer",
            payment_gateway="qbo",
        )
        await references.append_log(
            session,
            provider="qbo",
            action="webhook",
            status="success" if marked else "ignored",
            gc_account_id=credential.gc_account_id,
            request_payload={"payment_id": change.entity_id, "invoice_id": str(invoice_id)},
            response_payload=payment,
        )
    return None
