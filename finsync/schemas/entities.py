from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


Provider = Literal["qbo", "stripe"]
EntityType = Literal["invoice", "expense", "client", "vendor", "account", "payment"]
SyncStatus = Literal["not_synced", "pending", "synced", "error"]


class EntitySnapshot(BaseModel):
    """Read-only view of an application record at the moment a sync starts."""

    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    id: uuid.UUID
    gc_account_id: uuid.UUID
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def counterpart(self) -> Optional[tuple[str, uuid.UUID]]:
        return None

    def gl_account(self) -> Optional[uuid.UUID]:
        return None


class InvoiceSnapshot(EntitySnapshot):
    entity_type: Literal["invoice"] = "invoice"
    client_id: Optional[uuid.UUID] = None
    gl_account_id: Optional[uuid.UUID] = None
    invoice_number: Optional[str] = None
    amount_cents: Any = None
    currency: str = "usd"
    status: Literal["pending_payment", "paid", "cancelled"] = "pending_payment"
    description: Optional[str] = None
    notes: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    payment_method: Optional[str] = None

    def counterpart(self) -> Optional[tuple[str, uuid.UUID]]:
        return ("client", self.client_id) if self.client_id else None

    def gl_account(self) -> Optional[uuid.UUID]:
        return self.gl_account_id


class ExpenseSnapshot(EntitySnapshot):
    entity_type: Literal["expense"] = "expense"
    vendor_id: Optional[uuid.UUID] = None
    gl_account_id: Optional[uuid.UUID] = None
    expense_number: Optional[str] = None
    name: str
    amount_cents: Any = None
    status: Literal["due", "partially_paid", "paid", "cancelled"] = "due"
    notes: Optional[str] = None
    expense_date: Optional[date] = None
    due_date: Optional[date] = None

    def counterpart(self) -> Optional[tuple[str, uuid.UUID]]:
        return ("vendor", self.vendor_id) if self.vendor_id else None

    def gl_account(self) -> Optional[uuid.UUID]:
        return self.gl_account_id


class _PartySnapshot(EntitySnapshot):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[dict[str, Any]] = None
    notes: Optional[str] = None


class ClientSnapshot(_PartySnapshot):
    entity_type: Literal["client"] = "client"


class VendorSnapshot(_PartySnapshot):
    entity_type: Literal["vendor"] = "vendor"


class AccountSnapshot(EntitySnapshot):
    entity_type: Literal["account"] = "account"
    name: str
    account_type: str
    account_number: Optional[str] = None
    description: Optional[str] = None


class PaymentSnapshot(EntitySnapshot):
    entity_type: Literal["payment"] = "payment"
    invoice_id: Optional[uuid.UUID] = None
    expense_id: Optional[uuid.UUID] = None
    amount_cents: Any = None
    payment_method: Optional[str] = None
    payment_date: Optional[date] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    status: Literal["pending", "completed", "failed"] = "completed"

    def linked_document(self) -> Optional[tuple[str, uuid.UUID]]:
        if self.invoice_id:
            return ("invoice", self.invoice_id)
        if self.expense_id:
            return ("expense", self.expense_id)
        return None


LocalEntity = Annotated[
    Union[
        InvoiceSnapshot,
        ExpenseSnapshot,
        ClientSnapshot,
        VendorSnapshot,
        AccountSnapshot,
        PaymentSnapshot,
    ],
    Field(discriminator="entity_type"),
]

local_entity_adapter: TypeAdapter[LocalEntity] = TypeAdapter(LocalEntity)

SNAPSHOT_MODELS: dict[str, type[EntitySnapshot]] = {
    "invoice": InvoiceSnapshot,
    "expense": ExpenseSnapshot,
    "client": ClientSnapshot,
    "vendor": VendorSnapshot,
    "account": AccountSnapshot,
    "payment": PaymentSnapshot,
}


def snapshot_from_row(entity_type: str, row: Any) -> EntitySnapshot:
    return SNAPSHOT_MODELS[entity_type].model_validate(row)
