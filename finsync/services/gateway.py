from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.config import Settings, get_settings
from finsync.core.errors import ReauthorizationRequired, TransientError, ValidationError
from finsync.core.http import get_async_client, request_with_rate_limit_backoff
from finsync.core.security import decrypt_secret, encrypt_secret
from finsync.db import repo
from finsync.db.models import ProviderCredentials
from finsync.services.mapper import ExternalPayload
from finsync.utils.clock import as_utc, utcnow
from finsync.utils.hashing import payload_digest


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: Optional[str]
    access_expires_at: Optional[datetime]
    refresh_expires_at: Optional[datetime]
    scopes: list[str] = field(default_factory=list)
    account_id: Optional[str] = None


@dataclass
class ProviderResponse:
    status_code: int
    payload: dict[str, Any]
    latency_ms: float
    external_id: Optional[str] = None
    source_updated_at: Optional[datetime] = None


def idempotency_key_for(payload: ExternalPayload, entity_type: str, entity_id: Any) -> str:
    # Same entity and body reuse the key; an edited body gets a fresh one.
    return f"finsync-{entity_type}-{entity_id}-{payload_digest(payload.body)}"


class ProviderGateway:
    """Authenticated HTTP access to one provider for one tenant credential.

    Instances hold no tenant state; the credential row is passed into every
    call so concurrent requests for different tenants never share tokens.
    """

    provider: str = ""
    REFRESH_THRESHOLD = timedelta(minutes=5)
    # Credentials whose tokens carry no expiry are treated as valid when False.
    tokens_expire = True

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport
        self.logger = logging.getLogger(f"finsync.services.{self.provider}")

    # Token lifecycle

    def token_state(self, credential: ProviderCredentials) -> str:
        if not credential.access_token:
            return "expired"
        expires_at = as_utc(credential.access_expires_at)
        if expires_at is None:
            return "expired" if self.tokens_expire else "valid"
        now = utcnow()
        if expires_at <= now:
            return "expired"
        if expires_at <= now + self.REFRESH_THRESHOLD:
            return "expiring"
        return "valid"

    async def ensure_fresh_token(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        *,
        force: bool = False,
    ) -> str:
        if credential.revoked_at is not None:
            raise ReauthorizationRequired(
                f"{self.provider} connection was revoked",
                details={"provider": self.provider, "reauthorize": True},
            )
        state = self.token_state(credential)
        if state == "valid" and not force:
            return self._bearer_token(credential)

        observed_expires_at = credential.access_expires_at
        if not credential.refresh_token_enc:
            await repo.mark_credential_failed(session, credential)
            raise ReauthorizationRequired(
                f"{self.provider} credential has no refresh token",
                details={"provider": self.provider, "reauthorize": True},
            )
        try:
            refresh_token = decrypt_secret(self.settings.fernet_key, credential.refresh_token_enc)
        except ValueError as exc:
            await repo.mark_credential_failed(session, credential)
            raise ReauthorizationRequired(
                f"{self.provider} refresh token could not be decrypted",
                details={"provider": self.provider, "reauthorize": True},
            ) from exc

        try:
            bundle = await self.refresh_tokens(refresh_token=refresh_token)
        except ReauthorizationRequired:
            await repo.mark_credential_failed(session, credential)
            self.logger.warning(
                "credential_refresh_rejected",
                extra={
                    "gc_account_id": str(credential.gc_account_id),
                    "account_id": credential.account_id,
                    "environment": credential.environment,
                },
            )
            raise

        won = await repo.swap_credential_tokens(
            session,
            credential,
            observed_expires_at=observed_expires_at,
            access_token=bundle.access_token,
            access_expires_at=bundle.access_expires_at,
            refresh_token_enc=encrypt_secret(self.settings.fernet_key, bundle.refresh_token)
            if bundle.refresh_token
            else None,
            refresh_expires_at=bundle.refresh_expires_at,
            scopes=bundle.scopes or None,
        )
        self.logger.info(
            "credential_refreshed" if won else "credential_refresh_superseded",
            extra={
                "gc_account_id": str(credential.gc_account_id),
                "account_id": credential.account_id,
                "environment": credential.environment,
                "token_state": state,
                "force": force,
            },
        )
        return self._bearer_token(credential)

    async def rotate_credential(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
    ) -> None:
        await self.ensure_fresh_token(session, credential, force=True)

    async def store_credentials(
        self,
        session: AsyncSession,
        *,
        gc_account_id: Any,
        environment: str,
        account_id: str,
        bundle: TokenBundle,
    ) -> ProviderCredentials:
        credential = await repo.get_credential_optional(
            session,
            gc_account_id=gc_account_id,
            provider=self.provider,
            environment=environment,
        )
        encrypted_refresh = (
            encrypt_secret(self.settings.fernet_key, bundle.refresh_token)
            if bundle.refresh_token
            else None
        )
        created = credential is None
        if credential is None:
            credential = ProviderCredentials(
                gc_account_id=gc_account_id,
                provider=self.provider,
                environment=environment,
                refresh_counter=0,
            )
        credential.account_id = account_id
        credential.access_token = bundle.access_token
        credential.access_expires_at = bundle.access_expires_at
        credential.refresh_token_enc = encrypted_refresh
        credential.refresh_expires_at = bundle.refresh_expires_at
        credential.scopes = bundle.scopes
        credential.revoked_at = None
        credential.last_error_at = None
        await repo.save_credential(session, credential)
        self.logger.info(
            "credential_created" if created else "credential_updated",
            extra={
                "gc_account_id": str(gc_account_id),
                "account_id": account_id,
                "environment": environment,
            },
        )
        return credential

    # Requests

    async def request(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        method: str,
        path: str,
        *,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> ProviderResponse:
        token = await self.ensure_fresh_token(session, credential)
        url = self._build_url(credential, path)
        async with get_async_client(self.settings, transport=self.transport) as client:
            start = perf_counter()
            response = await self._send(
                client, credential, token, method, url, body=body, params=params, headers=headers
            )
            if response.status_code == 401:
                self.logger.warning(
                    "provider_unauthorized",
                    extra={
                        "path": path,
                        "gc_account_id": str(credential.gc_account_id),
                        "account_id": credential.account_id,
                        "environment": credential.environment,
                    },
                )
                token = await self.ensure_fresh_token(session, credential, force=True)
                response = await self._send(
                    client, credential, token, method, url, body=body, params=params, headers=headers
                )
                if response.status_code == 401:
                    await repo.mark_credential_failed(session, credential)
                    raise ReauthorizationRequired(
                        f"{self.provider} rejected the refreshed token",
                        details={"provider": self.provider, "reauthorize": True},
                    )
            latency_ms = (perf_counter() - start) * 1000
        return self._classify(response, path=path, latency_ms=latency_ms)

    async def create(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        payload: ExternalPayload,
        *,
        idempotency_key: Optional[str] = None,
    ) -> ProviderResponse:
        raise NotImplementedError

    async def update(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        external_id: str,
        payload: ExternalPayload,
    ) -> ProviderResponse:
        raise NotImplementedError

    async def fetch(
        self,
        session: AsyncSession,
        credential: ProviderCredentials,
        resource: str,
        external_id: str,
    ) -> dict[str, Any]:
        raise NotImplementedError

    async def refresh_tokens(self, *, refresh_token: str) -> TokenBundle:
        raise NotImplementedError

    # Hooks for subclasses

    def _build_url(self, credential: ProviderCredentials, path: str) -> str:
        raise NotImplementedError

    def _bearer_token(self, credential: ProviderCredentials) -> str:
        if not credential.access_token:
            raise ReauthorizationRequired(
                f"Missing {self.provider} access token",
                details={"provider": self.provider, "reauthorize": True},
            )
        return credential.access_token

    def _request_kwargs(
        self,
        credential: ProviderCredentials,
        token: str,
        body: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _extract_error(self, response: httpx.Response) -> str:
        return response.text[:500]

    async def _send(
        self,
        client: httpx.AsyncClient,
        credential: ProviderCredentials,
        token: str,
        method: str,
        url: str,
        *,
        body: Optional[dict[str, Any]],
        params: Optional[dict[str, Any]],
        headers: Optional[dict[str, str]],
    ) -> httpx.Response:
        kwargs = self._request_kwargs(credential, token, body)
        if headers:
            kwargs["headers"] = {**kwargs.get("headers", {}), **headers}
        try:
            return await request_with_rate_limit_backoff(
                client,
                method,
                url,
                params=params,
                settings=self.settings,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            self.logger.error("provider_timeout", extra={"url": url, "method": method})
            raise TransientError(
                f"{self.provider} request timed out",
                details={"provider": self.provider},
            ) from exc
        except httpx.TransportError as exc:
            self.logger.error(
                "provider_transport_error",
                extra={"url": url, "method": method, "error": str(exc)},
            )
            raise TransientError(
                f"{self.provider} request failed: {exc.__class__.__name__}",
                details={"provider": self.provider},
            ) from exc

    def _classify(
        self,
        response: httpx.Response,
        *,
        path: str,
        latency_ms: float,
    ) -> ProviderResponse:
        status_code = response.status_code
        if status_code < 400:
            try:
                payload = response.json() if response.content else {}
            except ValueError:
                payload = {}
            return ProviderResponse(status_code=status_code, payload=payload, latency_ms=latency_ms)

        message = self._extract_error(response)
        details = {"provider": self.provider, "status": status_code, "provider_error": message}
        self.logger.error(
            "provider_request_failed",
            extra={"path": path, "status": status_code, "body": message},
        )
        if status_code == 429 or status_code >= 500:
            raise TransientError(
                f"{self.provider} error {status_code}: {message}",
                details=details,
            )
        raise ValidationError(
            f"{self.provider} rejected the request ({status_code}): {message}",
            details=details,
        )

    async def _token_request(
        self,
        url: str,
        data: dict[str, str],
        *,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        request_headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            **(headers or {}),
        }
        try:
            async with get_async_client(self.settings, transport=self.transport) as client:
                response = await request_with_rate_limit_backoff(
                    client,
                    "POST",
                    url,
                    data=data,
                    headers=request_headers,
                    settings=self.settings,
                )
        except httpx.TransportError as exc:
            raise TransientError(
                f"{self.provider} token endpoint unreachable",
                details={"provider": self.provider},
            ) from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(
                f"{self.provider} token endpoint error {response.status_code}",
                details={"provider": self.provider, "status": response.status_code},
            )
        if response.status_code >= 400:
            self.logger.error(
                "oauth_token_error",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
            raise ReauthorizationRequired(
                f"{self.provider} refused the token request (status {response.status_code})",
                details={"provider": self.provider, "reauthorize": True},
            )
        return response.json()
