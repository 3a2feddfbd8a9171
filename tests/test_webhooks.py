from __future__ import annotations

import json
import time
from datetime import timedelta
from typing import Any

import httpx
import pytest
from sqlalchemy import func, select

from finsync.core.errors import TransientError, ValidationError, WebhookVerificationError
from finsync.db import references, repo
from finsync.db.models import AccountSubscriptions, GcAccounts, Invoices, PaymentRecords, WebhookEvents
from finsync.services.qbo_handlers import parse_notifications
from finsync.services.webhooks import WebhookIngestor
from finsync.utils.clock import utcnow
from tests.conftest import add_credential, add_invoice, qbo_signature, stripe_signature

STRIPE_SECRET = "whsec_test_secret"
QBO_VERIFIER = "qbo-verifier-token"
REALM = "9130-realm"


def stripe_event(event_id: str, event_type: str, obj: dict[str, Any], **extra: Any) -> bytes:
    event = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
        **extra,
    }
    return json.dumps(event).encode("utf-8")


def payment_intent(intent_id: str, tenant_id, invoice_id=None, **fields: Any) -> dict[str, Any]:
    metadata = {"gc_account_id": str(tenant_id)}
    if invoice_id is not None:
        metadata["invoice_id"] = str(invoice_id)
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": 150000,
        "amount_received": 150000,
        "currency": "usd",
        "status": "succeeded",
        "metadata": metadata,
        **fields,
    }


def qbo_notification(name: str, entity_id: str, operation: str, last_updated) -> bytes:
    payload = {
        "eventNotifications": [
            {
                "realmId": REALM,
                "dataChangeEvent": {
                    "entities": [
                        {
                            "name": name,
                            "id": entity_id,
                            "operation": operation,
                            "lastUpdated": last_updated.isoformat(),
                        }
                    ]
                },
            }
        ]
    }
    return json.dumps(payload).encode("utf-8")


def qbo_payment(payment_id: str, invoice_external_id: str) -> dict[str, Any]:
    return {
        "Payment": {
            "Id": payment_id,
            "TotalAmt": 1500.0,
            "TxnDate": "2024-03-05",
            "Line": [
                {"Amount": 1500.0, "LinkedTxn": [{"TxnId": invoice_external_id, "TxnType": "Invoice"}]}
            ],
        }
    }


@pytest.fixture
def ingestor(session, settings, gateways):
    return WebhookIngestor(session, settings, gateways)


async def deliver_stripe(ingestor: WebhookIngestor, body: bytes, secret: str = STRIPE_SECRET):
    return await ingestor.ingest("stripe", body, {"Stripe-Signature": stripe_signature(body, secret)})


async def deliver_qbo(ingestor: WebhookIngestor, body: bytes):
    return await ingestor.ingest("qbo", body, {"intuit-signature": qbo_signature(body, QBO_VERIFIER)})


async def webhook_rows(session) -> list[WebhookEvents]:
    result = await session.execute(select(WebhookEvents))
    return list(result.scalars().all())


async def load_invoice(session_factory, invoice_id) -> Invoices:
    async with session_factory() as fresh:
        return await fresh.get(Invoices, invoice_id)


class TestStripeVerification:
    async def test_bad_signature_is_rejected_and_not_stored(self, session, ingestor, tenant):
        body = stripe_event("evt_bad", "payment_intent.succeeded", payment_intent("pi_1", tenant.id))

        with pytest.raises(WebhookVerificationError):
            await deliver_stripe(ingestor, body, secret="whsec_wrong")

        assert await webhook_rows(session) == []

    async def test_missing_signature_is_rejected(self, ingestor, tenant):
        body = stripe_event("evt_bad", "payment_intent.succeeded", payment_intent("pi_1", tenant.id))

        with pytest.raises(WebhookVerificationError):
            await ingestor.ingest("stripe", body, {})

    async def test_tampered_body_is_rejected(self, ingestor, tenant):
        body = stripe_event("evt_1", "payment_intent.succeeded", payment_intent("pi_1", tenant.id))
        signature = stripe_signature(body, STRIPE_SECRET)
        tampered = body.replace(b"150000", b"1")

        with pytest.raises(WebhookVerificationError):
            await ingestor.ingest("stripe", tampered, {"Stripe-Signature": signature})

    async def test_unknown_provider_is_a_validation_error(self, ingestor):
        with pytest.raises(ValidationError):
            await ingestor.ingest("paypal", b"{}", {})


class TestStripeEvents:
    async def test_duplicate_delivery_applies_once(self, session, session_factory, ingestor, tenant):
        invoice = await add_invoice(session, tenant.id)
        invoice_id = invoice.id
        body = stripe_event(
            "evt_1", "payment_intent.succeeded", payment_intent("pi_1", tenant.id, invoice_id)
        )

        first = await deliver_stripe(ingestor, body)
        second = await deliver_stripe(ingestor, body)

        assert first.applied == ["evt_1"]
        assert second.duplicates == ["evt_1"]
        assert second.applied == []
        assert await repo.count_payment_records(session, "pi_1") == 1

        stored = await load_invoice(session_factory, invoice_id)
        assert stored.status == "paid"
        assert stored.payment_reference == "pi_1"
        assert stored.payment_gateway == "stripe"

        rows = await webhook_rows(session)
        assert [(row.event_id, row.state) for row in rows] == [("evt_1", "applied")]

        reference = await references.get(session, "stripe", "invoice", invoice_id)
        assert reference.sync_status == "synced"
        assert reference.external_entity_id == "pi_1"

    async def test_missing_tenant_metadata_is_ignored_with_note(self, session, ingestor, tenant):
        intent = payment_intent("pi_2", tenant.id)
        intent["metadata"] = {}
        body = stripe_event("evt_2", "payment_intent.succeeded", intent)

        outcome = await deliver_stripe(ingestor, body)

        assert outcome.ignored == ["evt_2"]
        rows = await webhook_rows(session)
        assert rows[0].state == "applied"
        assert "gc_account_id" in rows[0].error_message
        assert await repo.count_payment_records(session, "pi_2") == 0

    async def test_failure_after_success_does_not_downgrade(self, session, ingestor, tenant):
        tenant_id = tenant.id
        invoice = await add_invoice(session, tenant_id)
        invoice_id = invoice.id
        succeeded = stripe_event(
            "evt_ok", "payment_intent.succeeded", payment_intent("pi_3", tenant_id, invoice_id)
        )
        failed = stripe_event(
            "evt_fail",
            "payment_intent.payment_failed",
            payment_intent(
                "pi_3",
                tenant_id,
                invoice_id,
                status="requires_payment_method",
                last_payment_error={"message": "Your card was declined."},
            ),
        )

        await deliver_stripe(ingestor, succeeded)
        outcome = await deliver_stripe(ingestor, failed)

        assert outcome.ignored == ["evt_fail"]
        result = await session.execute(
            select(PaymentRecords).where(PaymentRecords.payment_intent_id == "pi_3")
        )
        record = result.scalar_one()
        await session.refresh(record)
        assert record.status == "succeeded"
        reference = await references.get(session, "stripe", "invoice", invoice_id)
        assert reference.sync_status == "synced"

    async def test_failed_payment_marks_reference_error(self, session, ingestor, tenant):
        invoice = await add_invoice(session, tenant.id)
        invoice_id = invoice.id
        body = stripe_event(
            "evt_4",
            "payment_intent.payment_failed",
            payment_intent(
                "pi_4",
                tenant.id,
                invoice_id,
                status="requires_payment_method",
                last_payment_error={"message": "Your card was declined."},
            ),
        )

        outcome = await deliver_stripe(ingestor, body)

        assert outcome.applied == ["evt_4"]
        reference = await references.get(session, "stripe", "invoice", invoice_id)
        assert reference.sync_status == "error"
        assert reference.error_message == "Your card was declined."

    async def test_subscription_checkout_creates_subscription(self, session, ingestor, tenant):
        tenant_id = tenant.id
        body = stripe_event(
            "evt_5",
            "checkout.session.completed",
            {
                "id": "cs_1",
                "object": "checkout.session",
                "mode": "subscription",
                "subscription": "sub_1",
                "customer": "cus_1",
                "payment_status": "paid",
                "metadata": {"gc_account_id": str(tenant_id)},
            },
        )

        outcome = await deliver_stripe(ingestor, body)

        assert outcome.applied == ["evt_5"]
        result = await session.execute(
            select(AccountSubscriptions).where(AccountSubscriptions.gc_account_id == tenant_id)
        )
        subscription = result.scalar_one()
        assert subscription.status == "active"
        assert subscription.stripe_subscription_id == "sub_1"

    async def test_subscription_deleted_cancels_by_stripe_id(self, session, ingestor, tenant):
        tenant_id = tenant.id
        await repo.upsert_subscription(
            session,
            gc_account_id=tenant_id,
            status="active",
            stripe_subscription_id="sub_9",
            stripe_customer_id="cus_9",
        )
        await session.commit()
        body = stripe_event(
            "evt_6",
            "customer.subscription.deleted",
            {"id": "sub_9", "object": "subscription", "status": "active", "customer": "cus_9"},
        )

        await deliver_stripe(ingestor, body)

        subscription = await repo.get_subscription_by_stripe_id(session, "sub_9")
        await session.refresh(subscription)
        assert subscription.status == "canceled"

    async def test_deauthorization_revokes_credential(self, session, settings, ingestor, tenant):
        credential = await add_credential(
            session, settings, tenant.id, provider="stripe", account_id="acct_1", expires_in=None
        )
        body = stripe_event(
            "evt_7",
            "account.application.deauthorized",
            {"id": "ca_test_client", "object": "application"},
            account="acct_1",
        )

        outcome = await deliver_stripe(ingestor, body)

        assert outcome.applied == ["evt_7"]
        await session.refresh(credential)
        assert credential.revoked_at is not None
        connect = await repo.get_connect_account(session, "acct_1")
        assert connect.status == "deauthorized"

    async def test_invoice_checkout_marks_invoice_paid(
        self, session, session_factory, ingestor, tenant
    ):
        tenant_id = tenant.id
        invoice = await add_invoice(session, tenant_id)
        invoice_id = invoice.id
        body = stripe_event(
            "evt_9",
            "checkout.session.completed",
            {
                "id": "cs_pay_1",
                "object": "checkout.session",
                "mode": "payment",
                "payment_status": "paid",
                "payment_intent": "pi_cs_1",
                "amount_total": 150000,
                "currency": "usd",
                "customer_details": {"email": "owner@example.com"},
                "metadata": {"gc_account_id": str(tenant_id), "invoice_id": str(invoice_id)},
            },
            account="acct_gc_1",
        )

        outcome = await deliver_stripe(ingestor, body)

        assert outcome.applied == ["evt_9"]
        stored = await load_invoice(session_factory, invoice_id)
        assert stored.status == "paid"
        assert stored.payment_reference == "pi_cs_1"
        assert stored.payment_gateway == "stripe"
        assert stored.payment_method == "cc"
        assert await repo.count_payment_records(session, "pi_cs_1") == 1

    async def test_account_updated_tracks_connect_capabilities(
        self, session, settings, ingestor, tenant
    ):
        tenant_id = tenant.id
        await add_credential(
            session, settings, tenant_id, provider="stripe", account_id="acct_9", expires_in=None
        )
        onboarding = stripe_event(
            "evt_10",
            "account.updated",
            {
                "id": "acct_9",
                "object": "account",
                "charges_enabled": True,
                "payouts_enabled": False,
                "details_submitted": True,
            },
            account="acct_9",
        )
        completed = stripe_event(
            "evt_11",
            "account.updated",
            {
                "id": "acct_9",
                "object": "account",
                "charges_enabled": True,
                "payouts_enabled": True,
                "details_submitted": True,
                "metadata": {"gc_account_id": str(tenant_id)},
            },
            account="acct_9",
        )

        await deliver_stripe(ingestor, onboarding)
        connect = await repo.get_connect_account(session, "acct_9")
        assert connect.gc_account_id == tenant_id
        assert connect.charges_enabled is True
        assert connect.payouts_enabled is False

        outcome = await deliver_stripe(ingestor, completed)

        assert outcome.applied == ["evt_11"]
        await session.refresh(connect)
        assert connect.payouts_enabled is True
        assert connect.details_submitted is True
        assert connect.status == "active"

    async def test_unhandled_event_type_is_acknowledged(self, session, ingestor):
        body = stripe_event("evt_8", "charge.refunded", {"id": "ch_1", "object": "charge"})

        outcome = await deliver_stripe(ingestor, body)

        assert outcome.ignored == ["evt_8"]
        rows = await webhook_rows(session)
        assert rows[0].error_message == "unhandled event type charge.refunded"


class TestQuickBooksEvents:
    async def test_bad_signature_is_rejected(self, session, ingestor):
        body = qbo_notification("Invoice", "INV-100", "Update", utcnow())

        with pytest.raises(WebhookVerificationError):
            await ingestor.ingest("qbo", body, {"intuit-signature": "bm90LXRoZS1zaWduYXR1cmU="})
        with pytest.raises(WebhookVerificationError):
            await ingestor.ingest("qbo", body, {})

        assert await webhook_rows(session) == []

    async def test_delete_marks_reference_error(self, session, settings, ingestor, tenant):
        await add_credential(session, settings, tenant.id, account_id=REALM)
        invoice = await add_invoice(session, tenant.id)
        await references.upsert(
            session, "qbo", "invoice", invoice.id,
            gc_account_id=tenant.id, external_type="Invoice", status="synced",
            external_id="INV-100", source_updated_at=utcnow() - timedelta(hours=1),
        )
        await session.commit()

        outcome = await deliver_qbo(ingestor, qbo_notification("Invoice", "INV-100", "Delete", utcnow()))

        assert len(outcome.applied) == 1
        reference = await references.get(session, "qbo", "invoice", invoice.id)
        assert reference.sync_status == "error"
        assert reference.error_message == "Invoice deleted in QuickBooks"
        assert reference.external_entity_id == "INV-100"

    async def test_stale_notification_is_ignored(self, session, settings, ingestor, tenant):
        await add_credential(session, settings, tenant.id, account_id=REALM)
        invoice = await add_invoice(session, tenant.id)
        invoice_id = invoice.id
        await references.upsert(
            session, "qbo", "invoice", invoice_id,
            gc_account_id=tenant.id, external_type="Invoice", status="synced",
            external_id="INV-100", source_updated_at=utcnow(),
        )
        await session.commit()
        body = qbo_notification("Invoice", "INV-100", "Delete", utcnow() - timedelta(hours=1))

        outcome = await deliver_qbo(ingestor, body)

        assert len(outcome.ignored) == 1
        rows = await webhook_rows(session)
        assert rows[0].state == "applied"
        assert rows[0].error_message.startswith("conflict:")
        reference = await references.get(session, "qbo", "invoice", invoice_id)
        await session.refresh(reference)
        assert reference.sync_status == "synced"

    async def test_delete_only_touches_the_realm_tenant(
        self, session, session_factory, settings, ingestor, tenant
    ):
        other = GcAccounts(name="Other Builders", status="active")
        session.add(other)
        await session.flush()
        await add_credential(session, settings, tenant.id, account_id=REALM)
        await add_credential(session, settings, other.id, account_id="4620-other-realm")
        ours = await add_invoice(session, tenant.id)
        theirs = await add_invoice(session, other.id)
        ours_id, theirs_id = ours.id, theirs.id
        for owner_id, invoice_id in ((tenant.id, ours_id), (other.id, theirs_id)):
            await references.upsert(
                session, "qbo", "invoice", invoice_id,
                gc_account_id=owner_id, external_type="Invoice", status="synced",
                external_id="12", source_updated_at=utcnow() - timedelta(hours=1),
            )
        await session.commit()

        outcome = await deliver_qbo(ingestor, qbo_notification("Invoice", "12", "Delete", utcnow()))

        assert len(outcome.applied) == 1
        async with session_factory() as fresh:
            mine = await references.get(fresh, "qbo", "invoice", ours_id)
            untouched = await references.get(fresh, "qbo", "invoice", theirs_id)
        assert mine.sync_status == "error"
        assert untouched.sync_status == "synced"
        assert untouched.error_message is None

    async def test_payment_only_settles_the_realm_tenant_invoice(
        self, session, session_factory, settings, ingestor, tenant, stub
    ):
        other = GcAccounts(name="Other Builders", status="active")
        session.add(other)
        await session.flush()
        await add_credential(session, settings, tenant.id, account_id=REALM)
        await add_credential(session, settings, other.id, account_id="4620-other-realm")
        ours = await add_invoice(session, tenant.id)
        theirs = await add_invoice(session, other.id)
        ours_id, theirs_id = ours.id, theirs.id
        for owner_id, invoice_id in ((tenant.id, ours_id), (other.id, theirs_id)):
            await references.upsert(
                session, "qbo", "invoice", invoice_id,
                gc_account_id=owner_id, external_type="Invoice", status="synced",
                external_id="INV-100", source_updated_at=utcnow(),
            )
        await session.commit()
        stub.add("GET", "/payment/501", httpx.Response(200, json=qbo_payment("501", "INV-100")))

        outcome = await deliver_qbo(ingestor, qbo_notification("Payment", "501", "Create", utcnow()))

        assert len(outcome.applied) == 1
        assert (await load_invoice(session_factory, ours_id)).status == "paid"
        assert (await load_invoice(session_factory, theirs_id)).status == "pending_payment"

    async def test_provider_outage_leaves_event_for_redelivery(
        self, session, session_factory, settings, ingestor, tenant, stub
    ):
        await add_credential(session, settings, tenant.id, account_id=REALM)
        invoice = await add_invoice(session, tenant.id)
        invoice_id = invoice.id
        await references.upsert(
            session, "qbo", "invoice", invoice_id,
            gc_account_id=tenant.id, external_type="Invoice", status="synced",
            external_id="INV-100", source_updated_at=utcnow(),
        )
        await session.commit()
        stub.add("GET", "/payment/77", httpx.Response(503, json={"Fault": {}}), times=1)
        stub.add("GET", "/payment/77", httpx.Response(200, json=qbo_payment("77", "INV-100")))
        body = qbo_notification("Payment", "77", "Create", utcnow())

        with pytest.raises(TransientError):
            await deliver_qbo(ingestor, body)

        async with session_factory() as fresh:
            result = await fresh.execute(select(WebhookEvents))
            assert [row.state for row in result.scalars().all()] == ["verified"]
        assert (await load_invoice(session_factory, invoice_id)).status == "pending_payment"

        outcome = await deliver_qbo(ingestor, body)

        assert len(outcome.applied) == 1
        assert outcome.duplicates == []
        assert (await load_invoice(session_factory, invoice_id)).status == "paid"

    async def test_redelivered_notification_is_a_duplicate(self, ingestor, tenant):
        body = qbo_notification("Customer", "CUST-404", "Update", utcnow())

        first = await deliver_qbo(ingestor, body)
        second = await deliver_qbo(ingestor, body)

        assert first.ignored == second.duplicates
        assert len(second.duplicates) == 1

    async def test_payment_create_marks_linked_invoice_paid(
        self, session, session_factory, settings, ingestor, tenant, stub
    ):
        await add_credential(session, settings, tenant.id, account_id=REALM)
        invoice = await add_invoice(session, tenant.id)
        invoice_id = invoice.id
        await references.upsert(
            session, "qbo", "invoice", invoice_id,
            gc_account_id=tenant.id, external_type="Invoice", status="synced",
            external_id="INV-100", source_updated_at=utcnow(),
        )
        await session.commit()
        stub.add("GET", "/payment/501", httpx.Response(200, json=qbo_payment("501", "INV-100")))

        outcome = await deliver_qbo(ingestor, qbo_notification("Payment", "501", "Create", utcnow()))

        assert len(outcome.applied) == 1
        assert f"/v3/company/{REALM}/payment/501" in str(stub.calls("GET", "/payment/501")[0].url)
        stored = await load_invoice(session_factory, invoice_id)
        assert stored.status == "paid"
        assert stored.payment_gateway == "qbo"

    async def test_payment_for_unknown_realm_is_ignored(self, session, ingestor):
        outcome = await deliver_qbo(ingestor, qbo_notification("Payment", "777", "Create", utcnow()))

        assert len(outcome.ignored) == 1
        rows = await webhook_rows(session)
        assert rows[0].error_message == "Unknown QBO realm"


def test_notification_event_ids_are_stable():
    body = json.loads(qbo_notification("Invoice", "INV-1", "Update", utcnow()))

    first = parse_notifications(body)
    second = parse_notifications(body)

    assert len(first) == 1
    assert first[0].event_id == second[0].event_id
    assert first[0].event_type == "Invoice.Update"


async def test_event_rows_are_unique_per_provider(session):
    for _ in range(2):
        await repo.record_webhook_event(
            session, provider="stripe", event_id="evt_x", event_type="x", account_id=None, payload={}
        )
    await session.commit()

    result = await session.execute(select(func.count(WebhookEvents.id)))
    assert result.scalar_one() == 1
