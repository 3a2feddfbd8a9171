"""Verify provider webhooks and apply them exactly once per event id.

Event lifecycle: ``received`` -> ``verified`` -> ``applied``. Signature
failures are answered with 400 and never stored. Business-level failures are
recorded on the event row and acknowledged so the provider stops retrying.
Provider outages (``TransientError``) and database failures propagate and
leave the row ``verified`` so the provider redelivers.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, NoReturn, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.config import Settings, get_settings
from finsync.core.errors import (
    ReconciliationConflict,
    SyncError,
    TransientError,
    ValidationError,
    WebhookVerificationError,
)
from finsync.core.logging import log_webhook_transition
from finsync.core.security import verify_hmac_signature
from finsync.db import repo
from finsync.services.gateway import ProviderGateway
from finsync.services.qbo_handlers import EntityChange, handle_entity_change, parse_notifications
from finsync.services.stripe_handlers import STRIPE_HANDLERS

logger = logging.getLogger("finsync.services.webhooks")

QBO_SIGNATURE_HEADER = "intuit-signature"
STRIPE_SIGNATURE_HEADER = "stripe-signature"


@dataclass
class WebhookOutcome:
    provider: str
    applied: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)


class WebhookIngestor:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        gateways: Optional[Mapping[str, ProviderGateway]] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.gateways = gateways or {}

    async def ingest(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookOutcome:
        lowered = {key.lower(): value for key, value in headers.items()}
        if provider == "stripe":
            return await self._ingest_stripe(raw_body, lowered)
        if provider == "qbo":
            return await self._ingest_qbo(raw_body, lowered)
        raise ValidationError(f"Unknown provider: {provider}", details={"provider": provider})

    # Verification

    def verify_stripe(self, raw_body: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        secret = self.settings.stripe_webhook_secret
        signature = headers.get(STRIPE_SIGNATURE_HEADER)
        if not secret or not signature:
            self._reject("stripe", "missing webhook secret or signature")
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"),
                signature,
                secret,
                tolerance=self.settings.stripe_webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            self._reject("stripe", str(exc))
        return self._parse_json("stripe", raw_body)

    def verify_qbo(self, raw_body: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        secret = self.settings.qbo_webhook_verifier_token
        if not verify_hmac_signature(secret or "", raw_body, headers.get(QBO_SIGNATURE_HEADER)):
            self._reject("qbo", "signature mismatch")
        return self._parse_json("qbo", raw_body)

    def _reject(self, provider: str, reason: str) -> NoReturn:
        log_webhook_transition(
            provider=provider,
            event_id=None,
            event_type=None,
            state="rejected",
            error_message=reason,
        )
        raise WebhookVerificationError(
            "Webhook signature verification failed",
            details={"provider": provider},
        )

    def _parse_json(self, provider: str, raw_body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON", details={"provider": provider}) from exc
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object", details={"provider": provider})
        return payload

    # Stripe

    async def _ingest_stripe(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        event = self.verify_stripe(raw_body, headers)
        outcome = WebhookOutcome(provider="stripe")
        event_id = event.get("id")
        if not event_id:
            raise ValidationError("Stripe event has no id", details={"provider": "stripe"})
        event_type = event.get("type")

        async def apply() -> Optional[str]:
            handler = STRIPE_HANDLERS.get(event_type or "")
            if handler is None:
                return f"unhandled event type {event_type}"
            return await handler(self.session, event)

        await self._process(
            outcome,
            provider="stripe",
            event_id=str(event_id),
            event_type=event_type,
            account_id=event.get("account"),
            payload=event,
            apply=apply,
        )
        return outcome

    # QBO

    async def _ingest_qbo(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        payload = self.verify_qbo(raw_body, headers)
        outcome = WebhookOutcome(provider="qbo")
        gateway = self.gateways.get("qbo")
        for change in parse_notifications(payload):

            async def apply(change: EntityChange = change) -> Optional[str]:
                if gateway is None:
                    raise ValidationError("QBO gateway is not configured")
                return await handle_entity_change(self.session, change, gateway)

            await self._process(
                outcome,
                provider="qbo",
                event_id=change.event_id,
                event_type=change.event_type,
                account_id=change.realm_id,
                payload={"realmId": change.realm_id, **change.raw},
                apply=apply,
            )
        return outcome

    # Shared lifecycle

    async def _process(
        self,
        outcome: WebhookOutcome,
        *,
        provider: str,
        event_id: str,
        event_type: Optional[str],
        account_id: Optional[str],
        payload: dict[str, Any],
        apply,
    ) -> None:
        event = await repo.record_webhook_event(
            self.session,
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            payload=payload,
        )
        if event.state == "applied":
            await self.session.commit()
            outcome.duplicates.append(event_id)
            log_webhook_transition(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                state="duplicate",
            )
            return

        await repo.set_webhook_state(self.session, event, "verified")
        await self.session.commit()
        log_webhook_transition(provider=provider, event_id=event_id, event_type=event_type, state="verified")

        try:
            note = await apply()
        except ReconciliationConflict as exc:
            await self.session.rollback()
            note = f"conflict: {exc.message}"
            logger.info(
                "webhook_event_conflict_dropped",
                extra={
                    "provider": provider,
                    "event_id": event_id,
                    "event_type": event_type,
                    "details": exc.details,
                },
            )
        except TransientError as exc:
            await self.session.rollback()
            log_webhook_transition(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                state="failed",
                error_message=exc.message,
            )
            raise
        except SyncError as exc:
            await self.session.rollback()
            note = exc.message
            logger.warning(
                "webhook_event_ignored",
                extra={
                    "provider": provider,
                    "event_id": event_id,
                    "event_type": event_type,
                    "error_code": exc.code,
                    "error": exc.message,
                },
            )

        event = await repo.record_webhook_event(
            self.session,
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            payload=payload,
        )
        await repo.set_webhook_state(self.session, event, "applied", error_message=note)
        await self.session.commit()
        if note:
            outcome.ignored.append(event_id)
        else:
            outcome.applied.append(event_id)
        log_webhook_transition(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            state="applied",
            error_message=note,
        )
