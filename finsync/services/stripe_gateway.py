from __future__ import annotations

from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from time import perf_counter
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.errors import ReauthorizationRequired, TransientError, ValidationError
from finsync.core.http import get_async_client, request_with_rate_limit_backoff
from finsync.db.models import Invoices, ProviderCredentials
from finsync.services.gateway import ProviderGateway, ProviderResponse, TokenBundle
from finsync.services.mapper import ExternalPayload, to_cents
from finsync.utils.clock import utcnow


def encode_form(body: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Flatten nested dicts and lists into Stripe's ``a[b][0]=c`` form fields."""
    fields: dict[str, str] = {}
    for key, value in body.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            fields.update(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    fields.update(encode_form(item, item_name))
                else:
                    fields[item_name] = _form_value(item)
        else:
            fields[name] = _form_value(value)
    return fields


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def platform_fee_cents(amount_cents: int, percentage: float) -> int:
    fee = Decimal(amount_cents) * Decimal(str(percentage))
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway(ProviderGateway):
    provider = "stripe"
    tokens_expire = False

    API_BASE = "https://api.stripe.com/v1"
    AUTH_URL = "https://connect.stripe.com/oauth/authorize"
    TOKEN_URL = "https://connect.stripe.com/oauth/token"
    SCOPE = "read_write"

    def build_authorization_url(self, state: str, environment: str) -> str:
        if not self.settings.stripe_client_id:
            raise ValidationError("STRIPE_CLIENT_ID is not configured")
        params = {
            "response_type": "code",
            "client_id": self.settings.stripe_client_id,
            "scope": self.SCOPE,
            "state": state,
        }
        if self.settings.stripe_redirect_uri:
            params["redirect_uri"] = str(self.settings.stripe_redirect_uri)
        url = httpx.URL(self.AUTH_URL, params=params)
        self.logger.info(
            "oauth_authorization_url_generated",
            extra={"environment": environment},
        )
        return str(url)

    async def exchange_authorization_code(self, *, code: str) -> TokenBundle:
        payload = await self._token_request(
            self.TOKEN_URL,
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_secret": self.settings.stripe_secret_key,
            },
        )
        return self._parse_token_response(payload)

    async def refresh_tokens(self, *, refresh_token: str) -> TokenBundle:
        payload = await self._token_request(
            self.TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_secret": self.settings.stripe_secret_key,
            },
        )
        return self._parse_token_response(payload)

    async def create(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        payload: ExternalPayload,
        *,
        idempotency_key: Optional[str] = None,
    ) -> ProviderResponse:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        response = await self.request(
            session,
            credential,
            "POST",
            payload.resource,
            body=payload.body,
            headers=headers,
        )
        response.external_id = response.payload.get("id")
        return response

    async def update(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        external_id: str,
        payload: ExternalPayload,
    ) -> ProviderResponse:
        body = dict(payload.body)
        if payload.external_entity_type == "PaymentIntent":
            # payment_method_types cannot change once the intent exists.
            body.pop("payment_method_types", None)
        response = await self.request(
            session,
            credential,
            "POST",
            f"{payload.resource}/{external_id}",
            body=body,
        )
        response.external_id = response.payload.get("id") or external_id
        return response

    async def fetch(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        resource: str,
        external_id: str,
    ) -> dict[str, Any]:
        response = await self.request(session, credential, "GET", f"{resource}/{external_id}")
        return response.payload

    async def create_checkout_session(
        self,
        *,
        gc_account_id: Any,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
        customer_id: Optional[str] = None,
        mode: str = "subscription",
    ) -> dict[str, Any]:
        """Create a platform-level Checkout Session tagged with the tenant id."""
        metadata = {"gc_account_id": str(gc_account_id)}
        body: dict[str, Any] = {
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": str(gc_account_id),
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": metadata,
            "customer": customer_id,
            "customer_email": customer_email if not customer_id else None,
        }
        if mode == "subscription":
            body["subscription_data"] = {"metadata": metadata}
        return await self._create_checkout(body, gc_account_id=gc_account_id)

    async def create_invoice_checkout_session(
        self,
        *,
        invoice: Invoices,
        connected_account_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> dict[str, Any]:
        """Checkout for one invoice, settled to the tenant's connected account.

        The platform keeps ``STRIPE_PLATFORM_FEE_PERCENTAGE`` of the amount as
        an application fee. Both the session and its PaymentIntent carry the
        tenant and invoice ids so either webhook can find the invoice.
        """
        amount = to_cents(invoice.amount_cents, "amount_cents")
        if amount <= 0:
            raise ValidationError(
                "Invoice amount must be positive",
                details={"invoice_id": str(invoice.id), "amount_cents": amount},
            )
        metadata = {
            "gc_account_id": str(invoice.gc_account_id),
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
        }
        fee = platform_fee_cents(amount, self.settings.stripe_platform_fee_percentage)
        body: dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": str(invoice.id),
            "customer_email": customer_email,
            "line_items": [
                {
                    "price_data": {
                        "currency": (invoice.currency or self.settings.stripe_default_currency).lower(),
                        "product_data": {
                            "name": invoice.description
                            or f"Invoice {invoice.invoice_number or invoice.id}",
                        },
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }
            ],
            "payment_intent_data": {
                "application_fee_amount": fee or None,
                "on_behalf_of": connected_account_id,
                "transfer_data": {"destination": connected_account_id},
                "metadata": metadata,
            },
            "metadata": metadata,
        }
        return await self._create_checkout(body, gc_account_id=invoice.gc_account_id)

    async def _create_checkout(self, body: dict[str, Any], *, gc_account_id: Any) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.settings.stripe_secret_key}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        async with get_async_client(self.settings, transport=self.transport) as client:
            start = perf_counter()
            response = await self._send_platform(client, "checkout/sessions", body, headers)
            latency_ms = (perf_counter() - start) * 1000
        result = self._classify(response, path="checkout/sessions", latency_ms=latency_ms)
        self.logger.info(
            "checkout_session_created",
            extra={
                "gc_account_id": str(gc_account_id),
                "session_id": result.payload.get("id"),
                "mode": body.get("mode"),
                "latency_ms": round(latency_ms, 2),
            },
        )
        return result.payload

    async def _send_platform(
        self,
        client: httpx.AsyncClient,
        path: str,
        body: dict[str, Any],
        headers: dict[str, str],
    ) -> httpx.Response:
        url = f"{self.API_BASE}/{path}"
        try:
            return await request_with_rate_limit_backoff(
                client,
                "POST",
                url,
                data=encode_form(body),
                headers=headers,
                settings=self.settings,
            )
        except httpx.TransportError as exc:
            raise TransientError(
                f"stripe request failed: {exc.__class__.__name__}",
                details={"provider": self.provider},
            ) from exc

    def _build_url(self, credential: ProviderCredentials, path: str) -> str:
        return f"{self.API_BASE}/{path.lstrip('/')}"

    def _bearer_token(self, credential: ProviderCredentials) -> str:
        return self.settings.stripe_secret_key

    def _request_kwargs(
        self,
        credential: ProviderCredentials,
        token: str,
        body: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if credential.account_id and credential.account_id.startswith("acct_"):
            headers["Stripe-Account"] = credential.account_id
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            kwargs["data"] = encode_form(body)
        return kwargs

    def _extract_error(self, response: httpx.Response) -> str:
        try:
            error = response.json().get("error") or {}
        except ValueError:
            return response.text[:500]
        message = error.get("message") or error.get("code") or response.text
        return str(message)[:500]

    def _parse_token_response(self, payload: dict) -> TokenBundle:
        access_token = payload.get("access_token")
        account_id = payload.get("stripe_user_id")
        if not access_token or not account_id:
            raise ReauthorizationRequired(
                "Incomplete token response from Stripe",
                details={"provider": self.provider, "reauthorize": True},
            )
        expires_in = payload.get("expires_in")
        scopes = [scope for scope in str(payload.get("scope") or "").split() if scope]
        return TokenBundle(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            access_expires_at=utcnow() + timedelta(seconds=int(expires_in))
            if expires_in
            else None,
            refresh_expires_at=None,
            scopes=scopes,
            account_id=account_id,
        )
