"""Translate local records into provider payloads and back.

Everything here is pure: no database, no network. ``map_to_external`` is the
single entry point for outbound payloads and dispatches on the
``(provider, entity_type)`` pair.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Optional

from finsync.core.errors import ValidationError
from finsync.schemas.entities import (
    AccountSnapshot,
    ClientSnapshot,
    EntitySnapshot,
    ExpenseSnapshot,
    InvoiceSnapshot,
    PaymentSnapshot,
    VendorSnapshot,
)
from finsync.utils.clock import from_unix, parse_iso_datetime

logger = logging.getLogger("finsync.services.mapper")

TRACE_LABEL = "finsync"
_TRACE_PATTERN = re.compile(
    rf"{TRACE_LABEL} [a-z]+ ID: ([0-9a-fA-F]{{8}}-[0-9a-fA-F]{{4}}-[0-9a-fA-F]{{4}}-[0-9a-fA-F]{{4}}-[0-9a-fA-F]{{12}})"
)

QBO_NOTE_LIMIT = 4000
QBO_DOC_NUMBER_LIMIT = 21

# QBO BillPayment only supports these two pay types.
QBO_BILL_PAY_TYPES = {
    "cc": "CreditCard",
    "check": "Check",
    "transfer": "Check",
    "cash": "Check",
}
QBO_DEFAULT_BILL_PAY_TYPE = "Check"

# Ids of the payment methods QuickBooks seeds in every new company.
QBO_PAYMENT_METHOD_REFS = {
    "cash": "1",
    "check": "2",
    "cc": "3",
}
QBO_DEFAULT_PAYMENT_METHOD_REF = "2"
QBO_PAYMENT_METHOD_CODES = {ref: code for code, ref in QBO_PAYMENT_METHOD_REFS.items()}

STRIPE_PAYMENT_METHOD_TYPES = {
    "cc": "card",
    "transfer": "us_bank_account",
}
STRIPE_DEFAULT_PAYMENT_METHOD_TYPE = "card"


@dataclass(frozen=True)
class ExternalPayload:
    resource: str
    external_entity_type: str
    body: dict[str, Any]


@dataclass(frozen=True)
class PaymentStatusUpdate:
    local_entity_id: Optional[uuid.UUID]
    new_status: Optional[str]
    payment_reference: Optional[str]
    paid_at: Optional[datetime]
    amount_cents: Optional[int] = None
    payment_method: Optional[str] = None


# Helpers


def trace_marker(entity: EntitySnapshot) -> str:
    return f"{TRACE_LABEL} {entity.entity_type} ID: {entity.id}"


def extract_trace_id(text: Optional[str]) -> Optional[uuid.UUID]:
    if not text:
        return None
    match = _TRACE_PATTERN.search(text)
    if match is None:
        return None
    return uuid.UUID(match.group(1))


def _placeholder(label: str, entity: EntitySnapshot) -> str:
    return f"{label} - {trace_marker(entity)}"


def _traced_note(notes: Optional[str], entity: EntitySnapshot, limit: int = QBO_NOTE_LIMIT) -> str:
    marker = trace_marker(entity)
    if not notes or not notes.strip():
        return marker
    if marker in notes:
        return notes[:limit]
    head = notes.strip()[: max(limit - len(marker) - 1, 0)]
    return f"{head}\n{marker}"


def to_cents(value: Any, field: str = "amount") -> int:
    """Coerce an amount in cents to int, rejecting NaN, infinities and negatives."""
    if value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric")
    if isinstance(value, int):
        amount = Decimal(value)
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"{field} must be numeric", details={"value": str(value)}) from exc
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={"value": str(value)})
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative", details={"value": str(value)})
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_dollars(cents: int) -> float:
    return float((Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def dollars_to_cents(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_date(value: Any, field: str = "date") -> str:
    if value is None:
        return datetime.now(timezone.utc).date().isoformat()
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10]).isoformat()
        except ValueError as exc:
            raise ValidationError(f"{field} is not an ISO date", details={"value": value}) from exc
    raise ValidationError(f"{field} is not a date", details={"value": str(value)})


def _lookup_method(
    table: dict[str, str], code: Optional[str], default: str, *, provider: str
) -> str:
    normalized = (code or "").strip().lower()
    mapped = table.get(normalized)
    if mapped is None:
        logger.warning(
            "payment_method_unmapped",
            extra={"provider": provider, "payment_method": code, "fallback": default},
        )
        return default
    return mapped


def _require(value: Optional[str], message: str) -> str:
    if not value:
        raise ValidationError(message)
    return value


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


def _compact(body: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in body.items() if value is not None}


def _qbo_address(address: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not address:
        return None
    mapped = _compact(
        {
            "Line1": address.get("line1") or address.get("street"),
            "Line2": address.get("line2"),
            "City": address.get("city"),
            "CountrySubDivisionCode": address.get("state"),
            "PostalCode": address.get("postal_code") or address.get("zip"),
            "Country": address.get("country"),
        }
    )
    return mapped or None


def _stripe_address(address: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not address:
        return None
    mapped = _compact(
        {
            "line1": address.get("line1") or address.get("street"),
            "line2": address.get("line2"),
            "city": address.get("city"),
            "state": address.get("state"),
            "postal_code": address.get("postal_code") or address.get("zip"),
            "country": address.get("country"),
        }
    )
    return mapped or None


def _stripe_metadata(entity: EntitySnapshot, **extra: Optional[str]) -> dict[str, str]:
    metadata = {
        "local_entity_id": str(entity.id),
        "local_entity_type": entity.entity_type,
        "gc_account_id": str(entity.gc_account_id),
    }
    metadata.update({key: value for key, value in extra.items() if value})
    return metadata


# QBO


def _qbo_party(entity: ClientSnapshot | VendorSnapshot) -> dict[str, Any]:
    return _compact(
        {
            "DisplayName": _truncate(entity.name.strip(), 500),
            "PrimaryEmailAddr": {"Address": entity.email} if entity.email else None,
            "PrimaryPhone": {"FreeFormNumber": entity.phone} if entity.phone else None,
            "BillAddr": _qbo_address(entity.address),
            "Notes": _traced_note(entity.notes, entity),
        }
    )


def _qbo_customer(
    entity: ClientSnapshot,
    _counterpart: Optional[str],
    _gl_account: Optional[str],
    _linked: Optional[str],
) -> ExternalPayload:
    return ExternalPayload("customer", "Customer", _qbo_party(entity))


def _qbo_vendor(
    entity: VendorSnapshot,
    _counterpart: Optional[str],
    _gl_account: Optional[str],
    _linked: Optional[str],
) -> ExternalPayload:
    return ExternalPayload("vendor", "Vendor", _qbo_party(entity))


def _qbo_account(
    entity: AccountSnapshot,
    _counterpart: Optional[str],
    _gl_account: Optional[str],
    _linked: Optional[str],
) -> ExternalPayload:
    body = _compact(
        {
            "Name": _truncate(entity.name.strip(), 100),
            "AccountType": entity.account_type,
            "AcctNum": entity.account_number,
            "Description": _truncate(entity.description, 100),
        }
    )
    return ExternalPayload("account", "Account", body)


def _qbo_invoice(
    entity: InvoiceSnapshot,
    counterpart_external_id: Optional[str],
    gl_account_ref: Optional[str],
    _linked: Optional[str],
) -> ExternalPayload:
    customer_ref = _require(counterpart_external_id, "Invoice requires a synced customer")
    item_ref = _require(gl_account_ref, "Invoice requires an income item reference")
    amount = cents_to_dollars(to_cents(entity.amount_cents, "amount_cents"))
    label = f"Invoice {entity.invoice_number}" if entity.invoice_number else "Invoice"
    description = entity.description or _placeholder(label, entity)
    body = _compact(
        {
            "CustomerRef": {"value": customer_ref},
            "TxnDate": format_date(entity.invoice_date, "invoice_date"),
            "DueDate": format_date(entity.due_date, "due_date") if entity.due_date else None,
            "DocNumber": _truncate(entity.invoice_number, QBO_DOC_NUMBER_LIMIT),
            "PrivateNote": _traced_note(entity.notes, entity),
            "Line": [
                {
                    "Amount": amount,
                    "DetailType": "SalesItemLineDetail",
                    "Description": description,
                    "SalesItemLineDetail": {
                        "ItemRef": {"value": item_ref},
                        "Qty": 1,
                        "UnitPrice": amount,
                    },
                }
            ],
        }
    )
    return ExternalPayload("invoice", "Invoice", body)


def _qbo_bill(
    entity: ExpenseSnapshot,
    counterpart_external_id: Optional[str],
    gl_account_ref: Optional[str],
    _linked: Optional[str],
) -> ExternalPayload:
    vendor_ref = _require(counterpart_external_id, "Expense requires a synced vendor")
    account_ref = _require(gl_account_ref, "Expense requires an expense account reference")
    amount = cents_to_dollars(to_cents(entity.amount_cents, "amount_cents"))
    body = _compact(
        {
            "VendorRef": {"value": vendor_ref},
            "TxnDate": format_date(entity.expense_date, "expense_date"),
            "DueDate": format_date(entity.due_date, "due_date") if entity.due_date else None,
            "DocNumber": _truncate(entity.expense_number, QBO_DOC_NUMBER_LIMIT),
            "PrivateNote": _traced_note(entity.notes, entity),
            "Line": [
                {
                    "Amount": amount,
                    "DetailType": "AccountBasedExpenseLineDetail",
                    "Description": entity.name or _placeholder("Expense", entity),
                    "AccountBasedExpenseLineDetail": {
                        "AccountRef": {"value": account_ref},
                    },
                }
            ],
        }
    )
    return ExternalPayload("bill", "Bill", body)


def _qbo_payment(
    entity: PaymentSnapshot,
    counterpart_external_id: Optional[str],
    gl_account_ref: Optional[str],
    linked_external_id: Optional[str],
) -> ExternalPayload:
    amount = cents_to_dollars(to_cents(entity.amount_cents, "amount_cents"))
    linked = _require(linked_external_id, "Payment requires a synced invoice or bill")
    if entity.invoice_id:
        customer_ref = _require(counterpart_external_id, "Payment requires a synced customer")
        method_ref = _lookup_method(
            QBO_PAYMENT_METHOD_REFS,
            entity.payment_method,
            QBO_DEFAULT_PAYMENT_METHOD_REF,
            provider="qbo",
        )
        body = _compact(
            {
                "CustomerRef": {"value": customer_ref},
                "TotalAmt": amount,
                "TxnDate": format_date(entity.payment_date, "payment_date"),
                "PaymentRefNum": _truncate(entity.payment_reference, QBO_DOC_NUMBER_LIMIT),
                "PaymentMethodRef": {"value": method_ref},
                "PrivateNote": _traced_note(entity.notes, entity),
                "DepositToAccountRef": {"value": gl_account_ref} if gl_account_ref else None,
                "Line": [
                    {
                        "Amount": amount,
                        "LinkedTxn": [{"TxnId": linked, "TxnType": "Invoice"}],
                    }
                ],
            }
        )
        return ExternalPayload("payment", "Payment", body)

    vendor_ref = _require(counterpart_external_id, "Bill payment requires a synced vendor")
    account_ref = _require(gl_account_ref, "Bill payment requires a bank or card account reference")
    pay_type = _lookup_method(
        QBO_BILL_PAY_TYPES, entity.payment_method, QBO_DEFAULT_BILL_PAY_TYPE, provider="qbo"
    )
    body = _compact(
        {
            "VendorRef": {"value": vendor_ref},
            "PayType": pay_type,
            "TotalAmt": amount,
            "TxnDate": format_date(entity.payment_date, "payment_date"),
            "DocNumber": _truncate(entity.payment_reference, QBO_DOC_NUMBER_LIMIT),
            "PrivateNote": _traced_note(entity.notes, entity),
            "Line": [
                {
                    "Amount": amount,
                    "LinkedTxn": [{"TxnId": linked, "TxnType": "Bill"}],
                }
            ],
        }
    )
    if pay_type == "CreditCard":
        body["CreditCardPayment"] = {"CCAccountRef": {"value": account_ref}}
    else:
        body["CheckPayment"] = {"BankAccountRef": {"value": account_ref}}
    return ExternalPayload("billpayment", "BillPayment", body)


# Stripe


def _stripe_customer(
    entity: ClientSnapshot,
    _counterpart: Optional[str],
    _gl_account: Optional[str],
    _linked: Optional[str],
) -> ExternalPayload:
    body = _compact(
        {
            "name": entity.name.strip(),
            "email": entity.email,
            "phone": entity.phone,
            "address": _stripe_address(entity.address),
            "description": entity.notes or _placeholder("Client", entity),
            "metadata": _stripe_metadata(entity),
        }
    )
    return ExternalPayload("customers", "Customer", body)


def _stripe_payment_intent(
    entity: InvoiceSnapshot,
    counterpart_external_id: Optional[str],
    _gl: Optional[str],
    _linked: Optional[str],
) -> ExternalPayload:
    amount = to_cents(entity.amount_cents, "amount_cents")
    if amount == 0:
        raise ValidationError("Stripe payment intents require a positive amount")
    label = f"Invoice {entity.invoice_number}" if entity.invoice_number else "Invoice"
    method = _lookup_method(
        STRIPE_PAYMENT_METHOD_TYPES,
        entity.payment_method or "cc",
        STRIPE_DEFAULT_PAYMENT_METHOD_TYPE,
        provider="stripe",
    )
    body = _compact(
        {
            "amount": amount,
            "currency": (entity.currency or "usd").lower(),
            "customer": counterpart_external_id,
            "description": entity.description or _placeholder(label, entity),
            "payment_method_types": [method],
            "metadata": _stripe_metadata(
                entity,
                invoice_id=str(entity.id),
                invoice_number=entity.invoice_number,
            ),
        }
    )
    return ExternalPayload("payment_intents", "PaymentIntent", body)


MapperFn = Callable[[Any, Optional[str], Optional[str], Optional[str]], ExternalPayload]

_MAPPERS: dict[tuple[str, str], MapperFn] = {
    ("qbo", "client"): _qbo_customer,
    ("qbo", "vendor"): _qbo_vendor,
    ("qbo", "account"): _qbo_account,
    ("qbo", "invoice"): _qbo_invoice,
    ("qbo", "expense"): _qbo_bill,
    ("qbo", "payment"): _qbo_payment,
    ("stripe", "client"): _stripe_customer,
    ("stripe", "invoice"): _stripe_payment_intent,
}

_TARGETS: dict[tuple[str, str], tuple[str, str]] = {
    ("qbo", "client"): ("customer", "Customer"),
    ("qbo", "vendor"): ("vendor", "Vendor"),
    ("qbo", "account"): ("account", "Account"),
    ("qbo", "invoice"): ("invoice", "Invoice"),
    ("qbo", "expense"): ("bill", "Bill"),
    ("stripe", "client"): ("customers", "Customer"),
    ("stripe", "invoice"): ("payment_intents", "PaymentIntent"),
}


def resolve_target(provider: str, entity: EntitySnapshot) -> tuple[str, str]:
    """Return ``(resource, external_entity_type)`` for an entity on a provider."""
    if provider == "qbo" and isinstance(entity, PaymentSnapshot):
        if entity.invoice_id:
            return ("payment", "Payment")
        if entity.expense_id:
            return ("billpayment", "BillPayment")
        raise ValidationError("Payment is not linked to an invoice or expense")
    target = _TARGETS.get((provider, entity.entity_type))
    if target is None:
        raise ValidationError(
            f"{entity.entity_type} records cannot be synced to {provider}",
            details={"provider": provider, "entity_type": entity.entity_type},
        )
    return target


def map_to_external(
    provider: str,
    entity: EntitySnapshot,
    counterpart_external_id: Optional[str],
    gl_account_ref: Optional[str],
    *,
    linked_external_id: Optional[str] = None,
) -> ExternalPayload:
    mapper = _MAPPERS.get((provider, entity.entity_type))
    if mapper is None:
        raise ValidationError(
            f"{entity.entity_type} records cannot be synced to {provider}",
            details={"provider": provider, "entity_type": entity.entity_type},
        )
    return mapper(entity, counterpart_external_id, gl_account_ref, linked_external_id)


# Reverse mapping

_STRIPE_INTENT_STATUSES = {
    "succeeded": "paid",
    "processing": "pending_payment",
    "requires_payment_method": "failed",
    "canceled": "failed",
}


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _stripe_local_id(obj: dict[str, Any]) -> Optional[uuid.UUID]:
    metadata = obj.get("metadata") or {}
    return _parse_uuid(
        metadata.get("invoice_id") or metadata.get("invoiceId") or metadata.get("local_entity_id")
    )


def _from_stripe(obj: dict[str, Any]) -> PaymentStatusUpdate:
    kind = obj.get("object")
    if kind == "checkout.session":
        payment_status = obj.get("payment_status")
        if payment_status == "paid":
            new_status = "paid"
        elif payment_status is None:
            new_status = None
        else:
            new_status = "pending_payment"
        return PaymentStatusUpdate(
            local_entity_id=_stripe_local_id(obj),
            new_status=new_status,
            payment_reference=obj.get("payment_intent") or obj.get("id"),
            paid_at=None,
            amount_cents=obj.get("amount_total"),
        )

    charges = (obj.get("charges") or {}).get("data") or []
    paid_at = from_unix(charges[0].get("created")) if charges else None
    amount = obj.get("amount_received") or obj.get("amount")
    return PaymentStatusUpdate(
        local_entity_id=_stripe_local_id(obj),
        new_status=_STRIPE_INTENT_STATUSES.get(obj.get("status") or ""),
        payment_reference=obj.get("id"),
        paid_at=paid_at,
        amount_cents=amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
    )


def _unwrap_qbo(obj: dict[str, Any], object_type: Optional[str]) -> tuple[str, dict[str, Any]]:
    for key in ("Payment", "Invoice"):
        if isinstance(obj.get(key), dict):
            return key, obj[key]
    if object_type:
        return object_type, obj
    lines = obj.get("Line") or []
    if any(isinstance(line, dict) and line.get("LinkedTxn") for line in lines):
        return "Payment", obj
    return "Invoice", obj


def _from_qbo(obj: dict[str, Any], object_type: Optional[str]) -> PaymentStatusUpdate:
    kind, data = _unwrap_qbo(obj, object_type)
    local_id = extract_trace_id(data.get("PrivateNote"))
    amount = dollars_to_cents(data.get("TotalAmt"))
    if amount is None:
        line_amounts = [
            dollars_to_cents(line.get("Amount"))
            for line in data.get("Line") or []
            if isinstance(line, dict) and line.get("DetailType") != "SubTotalLineDetail"
        ]
        if line_amounts and all(value is not None for value in line_amounts):
            amount = sum(line_amounts)

    if kind == "Payment":
        return PaymentStatusUpdate(
            local_entity_id=local_id,
            new_status="paid",
            payment_reference=data.get("PaymentRefNum") or data.get("Id"),
            paid_at=parse_iso_datetime(data.get("TxnDate")),
            amount_cents=amount,
            payment_method=QBO_PAYMENT_METHOD_CODES.get(
                str((data.get("PaymentMethodRef") or {}).get("value") or "")
            ),
        )

    balance = dollars_to_cents(data.get("Balance"))
    if balance is None:
        new_status = "pending_payment"
    elif balance == 0:
        new_status = "paid"
    else:
        new_status = "pending_payment"
    return PaymentStatusUpdate(
        local_entity_id=local_id,
        new_status=new_status,
        payment_reference=data.get("Id"),
        paid_at=None,
        amount_cents=amount,
    )


def map_from_external_payment(
    provider: str,
    obj: dict[str, Any],
    *,
    object_type: Optional[str] = None,
) -> PaymentStatusUpdate:
    """Turn a provider payment/checkout object into a local status update.

    Missing optional fields come back as ``None``.
    """
    if not isinstance(obj, dict):
        raise ValidationError("Payment object must be a mapping")
    if provider == "stripe":
        return _from_stripe(obj)
    if provider == "qbo":
        return _from_qbo(obj, object_type)
    raise ValidationError(f"Unknown provider: {provider}")
