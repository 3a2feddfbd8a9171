from __future__ import annotations

import logging
import uuid
from datetime import date

import pytest

from finsync.core.errors import ValidationError
from finsync.schemas.entities import (
    ClientSnapshot,
    ExpenseSnapshot,
    InvoiceSnapshot,
    PaymentSnapshot,
    local_entity_adapter,
)
from finsync.services.mapper import (
    extract_trace_id,
    map_from_external_payment,
    map_to_external,
    resolve_target,
    to_cents,
)
from finsync.services.stripe_gateway import encode_form

TENANT = uuid.UUID("7d6f1c7e-3f44-4a51-9a55-0d1f7c3f1a10")


def make_invoice(**fields) -> InvoiceSnapshot:
    return InvoiceSnapshot(
        id=fields.pop("id", uuid.uuid4()),
        gc_account_id=TENANT,
        amount_cents=fields.pop("amount_cents", 150000),
        invoice_number=fields.pop("invoice_number", "INV-1001"),
        invoice_date=fields.pop("invoice_date", date(2024, 3, 1)),
        **fields,
    )


class TestQuickBooksMapping:
    def test_invoice_uses_customer_ref_and_dollar_amount(self):
        invoice = make_invoice()

        payload = map_to_external("qbo", invoice, "CUST-9", "1")

        assert payload.resource == "invoice"
        assert payload.external_entity_type == "Invoice"
        assert payload.body["CustomerRef"] == {"value": "CUST-9"}
        line = payload.body["Line"][0]
        assert line["Amount"] == 1500.00
        assert line["SalesItemLineDetail"]["ItemRef"] == {"value": "1"}
        assert payload.body["TxnDate"] == "2024-03-01"
        assert str(invoice.id) in payload.body["PrivateNote"]

    def test_invoice_without_customer_is_rejected(self):
        with pytest.raises(ValidationError):
            map_to_external("qbo", make_invoice(), None, "1")

    def test_expense_maps_to_bill(self):
        expense = ExpenseSnapshot(
            id=uuid.uuid4(),
            gc_account_id=TENANT,
            name="Lumber",
            amount_cents=2599,
            notes="Delivered Tuesday",
        )

        payload = map_to_external("qbo", expense, "VEND-3", "80")

        assert payload.resource == "bill"
        assert payload.body["VendorRef"] == {"value": "VEND-3"}
        detail = payload.body["Line"][0]["AccountBasedExpenseLineDetail"]
        assert detail["AccountRef"] == {"value": "80"}
        assert payload.body["Line"][0]["Amount"] == 25.99
        assert payload.body["PrivateNote"].startswith("Delivered Tuesday")

    def test_bill_payment_by_card_uses_credit_card_account(self):
        payment = PaymentSnapshot(
            id=uuid.uuid4(),
            gc_account_id=TENANT,
            expense_id=uuid.uuid4(),
            amount_cents=2599,
            payment_method="cc",
        )

        payload = map_to_external("qbo", payment, "VEND-3", "41", linked_external_id="BILL-7")

        assert payload.external_entity_type == "BillPayment"
        assert payload.body["PayType"] == "CreditCard"
        assert payload.body["CreditCardPayment"] == {"CCAccountRef": {"value": "41"}}
        assert payload.body["Line"][0]["LinkedTxn"] == [{"TxnId": "BILL-7", "TxnType": "Bill"}]

    def test_invoice_payment_carries_payment_method(self):
        payment = PaymentSnapshot(
            id=uuid.uuid4(),
            gc_account_id=TENANT,
            invoice_id=uuid.uuid4(),
            amount_cents=150000,
            payment_method="cc",
        )

        payload = map_to_external("qbo", payment, "CUST-1", "35", linked_external_id="INV-9")

        assert payload.external_entity_type == "Payment"
        assert payload.body["PaymentMethodRef"] == {"value": "3"}
        assert payload.body["Line"][0]["LinkedTxn"] == [{"TxnId": "INV-9", "TxnType": "Invoice"}]

    def test_unknown_payment_method_falls_back_with_warning(self, caplog):
        payment = PaymentSnapshot(
            id=uuid.uuid4(),
            gc_account_id=TENANT,
            invoice_id=uuid.uuid4(),
            amount_cents=150000,
            payment_method="wire",
        )

        with caplog.at_level(logging.WARNING, logger="finsync.services.mapper"):
            payload = map_to_external("qbo", payment, "CUST-1", "35", linked_external_id="INV-9")

        assert payload.body["PaymentMethodRef"] == {"value": "2"}
        unmapped = [record for record in caplog.records if record.getMessage() == "payment_method_unmapped"]
        assert len(unmapped) == 1
        assert unmapped[0].payment_method == "wire"
        assert unmapped[0].fallback == "2"

    def test_payment_target_follows_linked_document(self):
        invoice_payment = PaymentSnapshot(
            id=uuid.uuid4(), gc_account_id=TENANT, invoice_id=uuid.uuid4(), amount_cents=100
        )
        orphan = PaymentSnapshot(id=uuid.uuid4(), gc_account_id=TENANT, amount_cents=100)

        assert resolve_target("qbo", invoice_payment) == ("payment", "Payment")
        with pytest.raises(ValidationError):
            resolve_target("qbo", orphan)


class TestStripeMapping:
    def test_invoice_maps_to_payment_intent_in_cents(self):
        invoice = make_invoice(currency="USD")

        payload = map_to_external("stripe", invoice, "cus_123", None)

        assert payload.resource == "payment_intents"
        assert payload.body["amount"] == 150000
        assert payload.body["currency"] == "usd"
        assert payload.body["customer"] == "cus_123"
        assert payload.body["metadata"]["gc_account_id"] == str(TENANT)
        assert payload.body["metadata"]["invoice_id"] == str(invoice.id)

    def test_client_maps_to_customer(self):
        client = ClientSnapshot(
            id=uuid.uuid4(),
            gc_account_id=TENANT,
            name="  Jane Homeowner ",
            email="jane@example.com",
            address={"street": "1 Main St", "city": "Austin", "zip": "73301"},
        )

        payload = map_to_external("stripe", client, None, None)

        assert payload.body["name"] == "Jane Homeowner"
        assert payload.body["address"] == {"line1": "1 Main St", "city": "Austin", "postal_code": "73301"}

    def test_expenses_cannot_go_to_stripe(self):
        expense = ExpenseSnapshot(id=uuid.uuid4(), gc_account_id=TENANT, name="Tile", amount_cents=1)

        with pytest.raises(ValidationError):
            resolve_target("stripe", expense)
        with pytest.raises(ValidationError):
            map_to_external("stripe", expense, None, None)

    def test_zero_amount_payment_intent_is_rejected(self):
        with pytest.raises(ValidationError):
            map_to_external("stripe", make_invoice(amount_cents=0), "cus_1", None)


@pytest.mark.parametrize("value", [-1, "nan", "inf", "abc", None, True])
def test_to_cents_rejects_bad_amounts(value):
    with pytest.raises(ValidationError):
        to_cents(value)


def test_to_cents_rounds_half_up():
    assert to_cents("1999.5") == 2000
    assert to_cents(42) == 42


def test_invoice_round_trip_keeps_amount_and_local_id():
    invoice = make_invoice(amount_cents=123457)

    outbound = map_to_external("qbo", invoice, "CUST-9", "1")
    update = map_from_external_payment("qbo", {"Invoice": {**outbound.body, "Id": "88"}})

    assert update.amount_cents == 123457
    assert update.local_entity_id == invoice.id
    assert update.new_status == "pending_payment"


def test_stripe_round_trip_keeps_amount_and_local_id():
    invoice = make_invoice(amount_cents=99999)

    outbound = map_to_external("stripe", invoice, "cus_1", None)
    intent = {"object": "payment_intent", "id": "pi_1", "status": "succeeded", **outbound.body}
    update = map_from_external_payment("stripe", intent)

    assert update.amount_cents == 99999
    assert update.local_entity_id == invoice.id
    assert update.new_status == "paid"


def test_qbo_payment_reverse_mapping():
    update = map_from_external_payment(
        "qbo",
        {
            "Payment": {
                "Id": "501",
                "TotalAmt": 1500.0,
                "TxnDate": "2024-03-05",
                "PaymentRefNum": "CHK-12",
                "PaymentMethodRef": {"value": "2"},
            }
        },
    )

    assert update.new_status == "paid"
    assert update.amount_cents == 150000
    assert update.payment_reference == "CHK-12"
    assert update.payment_method == "check"
    assert update.paid_at is not None and update.paid_at.date() == date(2024, 3, 5)


def test_checkout_session_without_payment_status_has_no_status():
    update = map_from_external_payment("stripe", {"object": "checkout.session", "id": "cs_1"})

    assert update.new_status is None
    assert update.local_entity_id is None
    assert update.payment_reference == "cs_1"


def test_extract_trace_id_ignores_foreign_text():
    local_id = uuid.uuid4()

    assert extract_trace_id(f"paid in full\nfinsync invoice ID: {local_id}") == local_id
    assert extract_trace_id("nothing to see") is None
    assert extract_trace_id(None) is None


def test_local_entity_union_dispatches_on_tag():
    entity = local_entity_adapter.validate_python(
        {"entity_type": "client", "id": str(uuid.uuid4()), "gc_account_id": str(TENANT), "name": "Bob"}
    )

    assert isinstance(entity, ClientSnapshot)


def test_encode_form_flattens_nested_values():
    fields = encode_form(
        {
            "amount": 100,
            "metadata": {"invoice_id": "abc"},
            "payment_method_types": ["card"],
            "line_items": [{"price": "price_1", "quantity": 1}],
            "customer": None,
            "capture": False,
        }
    )

    assert fields == {
        "amount": "100",
        "metadata[invoice_id]": "abc",
        "payment_method_types[0]": "card",
        "line_items[0][price]": "price_1",
        "line_items[0][quantity]": "1",
        "capture": "false",
    }
