from __future__ import annotations

import base64
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.errors import ReauthorizationRequired, ValidationError
from finsync.db.models import ProviderCredentials
from finsync.services.gateway import ProviderGateway, ProviderResponse, TokenBundle
from finsync.services.mapper import ExternalPayload
from finsync.utils.clock import parse_iso_datetime, utcnow
from finsync.utils.hashing import qbo_request_id


class QuickBooksGateway(ProviderGateway):
    provider = "qbo"

    AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
    TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
    PROD_API_BASE = "https://quickbooks.api.intuit.com"
    SCOPES = ["com.intuit.quickbooks.accounting"]
    MINOR_VERSION = "65"

    def build_authorization_url(self, state: str, environment: str) -> str:
        params = {
            "client_id": self.settings.qbo_client_id,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
            "response_type": "code",
            "scope": " ".join(self.SCOPES),
            "state": state,
        }
        url = httpx.URL(self.AUTH_URL, params=params)
        self.logger.info(
            "oauth_authorization_url_generated",
            extra={"environment": environment},
        )
        return str(url)

    async def exchange_authorization_code(self, *, code: str, realm_id: str) -> TokenBundle:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
        }
        payload = await self._token_request(
            self.TOKEN_URL, data, headers={"Authorization": self._basic_auth_header()}
        )
        bundle = self._parse_token_response(payload)
        bundle.account_id = realm_id
        return bundle

    async def refresh_tokens(self, *, refresh_token: str) -> TokenBundle:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        payload = await self._token_request(
            self.TOKEN_URL, data, headers={"Authorization": self._basic_auth_header()}
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
        params = {"minorversion": self.MINOR_VERSION}
        if idempotency_key:
            # Intuit deduplicates writes carrying the same requestid.
            params["requestid"] = qbo_request_id(idempotency_key)
        response = await self.request(
            session,
            credential,
            "POST",
            payload.resource,
            body=payload.body,
            params=params,
        )
        response.external_id = self._extract_id(response.payload, payload.external_entity_type)
        response.source_updated_at = self._extract_last_updated(
            response.payload, payload.external_entity_type
        )
        return response

    async def update(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        external_id: str,
        payload: ExternalPayload,
    ) -> ProviderResponse:
        current = await self.fetch(session, credential, payload.resource, external_id)
        entity = current.get(payload.external_entity_type) or {}
        sync_token = entity.get("SyncToken")
        if sync_token is None:
            raise ValidationError(
                f"QBO {payload.external_entity_type} {external_id} has no SyncToken",
                details={"provider": self.provider, "external_id": external_id},
            )
        body = {**payload.body, "Id": external_id, "SyncToken": sync_token, "sparse": True}
        response = await self.request(
            session,
            credential,
            "POST",
            payload.resource,
            body=body,
            params={"minorversion": self.MINOR_VERSION, "operation": "update"},
        )
        response.external_id = (
            self._extract_id(response.payload, payload.external_entity_type) or external_id
        )
        response.source_updated_at = self._extract_last_updated(
            response.payload, payload.external_entity_type
        )
        return response

    async def fetch(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        resource: str,
        external_id: str,
    ) -> dict[str, Any]:
        response = await self.request(
            session,
            credential,
            "GET",
            f"{resource}/{external_id}",
            params={"minorversion": self.MINOR_VERSION},
        )
        return response.payload

    def _build_url(self, credential: ProviderCredentials, path: str) -> str:
        base = (
            self.SANDBOX_API_BASE
            if credential.environment == "sandbox"
            else self.PROD_API_BASE
        )
        return f"{base}/v3/company/{credential.account_id}/{path.lstrip('/')}"

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
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            headers["Content-Type"] = "application/json"
            kwargs["json"] = body
        return kwargs

    def _extract_error(self, response: httpx.Response) -> str:
        try:
            fault = response.json().get("Fault") or {}
        except ValueError:
            return response.text[:500]
        errors = fault.get("Error") or []
        if errors:
            first = errors[0]
            detail = first.get("Detail") or first.get("Message") or ""
            return f"{first.get('code', '')} {detail}".strip()[:500]
        return response.text[:500]

    def _extract_id(self, payload: dict[str, Any], external_type: str) -> Optional[str]:
        entity = payload.get(external_type)
        if isinstance(entity, dict) and entity.get("Id") is not None:
            return str(entity["Id"])
        return None

    def _extract_last_updated(self, payload: dict[str, Any], external_type: str) -> Optional[datetime]:
        entity = payload.get(external_type)
        if not isinstance(entity, dict):
            return None
        return parse_iso_datetime((entity.get("MetaData") or {}).get("LastUpdatedTime"))

    def _parse_token_response(self, payload: dict) -> TokenBundle:
        now = utcnow()
        try:
            access_expires_in = int(payload["expires_in"])
            refresh_expires_in = int(payload.get("x_refresh_token_expires_in", 0))
            access_token = payload["access_token"]
            refresh_token = payload["refresh_token"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ReauthorizationRequired(
                "Incomplete token response from Intuit",
                details={"provider": self.provider, "reauthorize": True},
            ) from exc

        scopes = [scope for scope in payload.get("scope", "").split() if scope]
        bundle = TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=now + timedelta(seconds=access_expires_in),
            refresh_expires_at=now + timedelta(seconds=refresh_expires_in)
            if refresh_expires_in
            else None,
            scopes=scopes,
        )
        self.logger.info(
            "token_bundle_parsed",
            extra={"access_expires_at": bundle.access_expires_at.isoformat()},
        )
        return bundle

    def _basic_auth_header(self) -> str:
        credentials = f"{self.settings.qbo_client_id}:{self.settings.qbo_client_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"
