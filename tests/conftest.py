from __future__ import annotations

import hashlib
import hmac
import inspect
import json
import os
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Optional, Union
from urllib.parse import parse_qs

os.environ.update(
    {
        "ENV": "sandbox",
        "API_KEY": "test-api-key",
        "FERNET_KEY": "Zmluc3luYy10ZXN0LWZlcm5ldC1rZXktMzJieXRlcyE=",
        "DATABASE_URL": "sqlite+aiosqlite:///./finsync-test.db",
        "QBO_CLIENT_ID": "qbo-client",
        "QBO_CLIENT_SECRET": "qbo-secret",
        "QBO_REDIRECT_URI": "https://finsync.test/auth/qbo/callback",
        "QBO_WEBHOOK_VERIFIER_TOKEN": "qbo-verifier-token",
        "QBO_DEFAULT_INCOME_ITEM": "1",
        "QBO_DEFAULT_EXPENSE_ACCOUNT": "80",
        "QBO_DEFAULT_DEPOSIT_ACCOUNT": "35",
        "STRIPE_SECRET_KEY": "sk_test_platform",
        "STRIPE_CLIENT_ID": "ca_test_client",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_secret",
        "RETRY_MAX_ATTEMPTS": "3",
        "RETRY_MAX_WAIT": "0",
        "SYNC_STALE_SECONDS": "60",
    }
)

import httpx  # noqa: E402
import pytest  # noqa: E402

from finsync.api.deps import get_gateways  # noqa: E402
from finsync.core.config import get_settings  # noqa: E402
from finsync.core.security import compute_hmac_signature, encrypt_secret  # noqa: E402
from finsync.db.models import (  # noqa: E402
    Base,
    Clients,
    GcAccounts,
    Invoices,
    ProviderCredentials,
)
from finsync.db.session import build_session_factory, create_engine_for, get_session  # noqa: E402
from finsync.services.qbo_gateway import QuickBooksGateway  # noqa: E402
from finsync.services.stripe_gateway import StripeGateway  # noqa: E402
from finsync.services.sync import SyncOrchestrator  # noqa: E402
from finsync.utils.clock import utcnow  # noqa: E402

Responder = Union[httpx.Response, Callable[[httpx.Request], Any]]


class ProviderStub:
    """Fake provider APIs: canned responses matched on method and URL fragment."""

    def __init__(self) -> None:
        self.routes: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        fragment: str,
        response: Responder,
        *,
        times: Optional[int] = None,
    ) -> None:
        self.routes.append(
            {"method": method, "fragment": fragment, "response": response, "times": times}
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for route in self.routes:
            if route["method"] != request.method or route["fragment"] not in str(request.url):
                continue
            if route["times"] is not None:
                if route["times"] == 0:
                    continue
                route["times"] -= 1
            response = route["response"]
            if callable(response):
                response = response(request)
                if inspect.isawaitable(response):
                    response = await response
            return response
        return httpx.Response(
            404,
            json={"error": {"message": f"no stub for {request.method} {request.url}"}},
        )

    def calls(self, method: Optional[str] = None, fragment: Optional[str] = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if (method is None or request.method == method)
            and (fragment is None or fragment in str(request.url))
        ]


def json_body(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content)


def form_body(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode("utf-8")).items()}


def stripe_signature(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def qbo_signature(payload: bytes, verifier: str) -> str:
    return compute_hmac_signature(verifier, payload)


def qbo_token_response(access_token: str = "access-new", refresh_token: str = "refresh-new") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_in": 3600,
            "x_refresh_token_expires_in": 8726400,
            "token_type": "bearer",
        },
    )


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_for(f"sqlite:///{tmp_path / 'finsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def gateways(settings, stub):
    transport = httpx.MockTransport(stub)
    return {
        "qbo": QuickBooksGateway(settings, transport=transport),
        "stripe": StripeGateway(settings, transport=transport),
    }


@pytest.fixture
def orchestrator(session, gateways, settings):
    return SyncOrchestrator(session, gateways, settings)


@pytest.fixture
async def tenant(session) -> GcAccounts:
    account = GcAccounts(name="Acme Builders", status="active")
    session.add(account)
    await session.commit()
    return account


async def add_credential(
    session,
    settings,
    gc_account_id: uuid.UUID,
    *,
    provider: str = "qbo",
    account_id: str = "9130-realm",
    access_token: Optional[str] = "access-1",
    expires_in: Optional[int] = 3600,
    refresh_token: Optional[str] = "refresh-1",
) -> ProviderCredentials:
    credential = ProviderCredentials(
        gc_account_id=gc_account_id,
        provider=provider,
        environment="sandbox",
        account_id=account_id,
        access_token=access_token,
        access_expires_at=utcnow() + timedelta(seconds=expires_in) if expires_in is not None else None,
        refresh_token_enc=encrypt_secret(settings.fernet_key, refresh_token) if refresh_token else None,
        refresh_counter=0,
    )
    session.add(credential)
    await session.commit()
    return credential


async def add_client(session, gc_account_id: uuid.UUID, **fields: Any) -> Clients:
    client = Clients(gc_account_id=gc_account_id, name=fields.pop("name", "Jane Homeowner"), **fields)
    session.add(client)
    await session.commit()
    return client


async def add_invoice(session, gc_account_id: uuid.UUID, **fields: Any) -> Invoices:
    invoice = Invoices(
        gc_account_id=gc_account_id,
        amount_cents=fields.pop("amount_cents", 150000),
        status=fields.pop("status", "pending_payment"),
        **fields,
    )
    session.add(invoice)
    await session.commit()
    return invoice


@pytest.fixture
async def api(session_factory, gateways, settings):
    from finsync.main import app

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateways] = lambda: gateways
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers={"X-API-Key": settings.api_key},
    ) as client:
        yield client
    app.dependency_overrides.clear()
