from __future__ import annotations

import pytest

from finsync.core.logging import gc_account_id_ctx, provider_ctx, sanitize_payload, tenant_context
from finsync.db.session import engine_options, normalize_database_url
from finsync.utils.hashing import composite_id, payload_digest, qbo_request_id


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("postgres://u:p@db/finsync", "postgresql+asyncpg://u:p@db/finsync"),
        ("postgresql://u:p@db/finsync", "postgresql+asyncpg://u:p@db/finsync"),
        ("postgresql+asyncpg://u:p@db/finsync", "postgresql+asyncpg://u:p@db/finsync"),
        ("sqlite:///./finsync.db", "sqlite+aiosqlite:///./finsync.db"),
        ("sqlite+aiosqlite:///./finsync.db", "sqlite+aiosqlite:///./finsync.db"),
    ],
)
def test_normalize_database_url(url, expected):
    assert normalize_database_url(url) == expected


def test_engine_options_per_backend():
    sqlite = engine_options("sqlite+aiosqlite:///./finsync.db")
    postgres = engine_options("postgresql+asyncpg://u:p@db/finsync")

    assert sqlite == {"connect_args": {"timeout": 30}}
    assert postgres["pool_pre_ping"] is True
    assert "connect_args" not in postgres


def test_payload_digest_ignores_key_order():
    first = payload_digest({"DisplayName": "Acme", "Balance": 10})
    second = payload_digest({"Balance": 10, "DisplayName": "Acme"})

    assert first == second
    assert len(first) == 16
    assert payload_digest({"DisplayName": "Acme", "Balance": 11}) != first


def test_qbo_request_id_is_stable_and_bounded():
    key = "finsync-invoice-" + "x" * 80

    assert qbo_request_id(key) == qbo_request_id(key)
    assert len(qbo_request_id(key)) == 36


def test_composite_id_treats_none_as_empty():
    assert composite_id("realm", "Invoice", None) == composite_id("realm", "Invoice", "")
    assert composite_id("realm", "Invoice", "1") != composite_id("realm", "Invoice1", "")


def test_sanitize_payload_redacts_credentials():
    payload = {
        "DisplayName": "Acme",
        "refresh_token": "rt-1",
        "headers": {"Stripe-Signature": "t=1,v1=abc"},
        "lines": [{"note": "charged with sk_test_abc123 by mistake"}],
        "amount": 1500,
    }

    sanitized = sanitize_payload(payload)

    assert sanitized["DisplayName"] == "Acme"
    assert sanitized["amount"] == 1500
    assert sanitized["refresh_token"] == "***redacted***"
    assert sanitized["headers"]["Stripe-Signature"] == "***redacted***"
    assert sanitized["lines"][0]["note"] == "charged with ***redacted*** by mistake"
    assert payload["refresh_token"] == "rt-1"


def test_tenant_context_restores_previous_values():
    outer = gc_account_id_ctx.get()
    with tenant_context("tenant-a", "qbo"):
        with tenant_context("tenant-b", "stripe"):
            assert gc_account_id_ctx.get() == "tenant-b"
            assert provider_ctx.get() == "stripe"
        assert gc_account_id_ctx.get() == "tenant-a"
        assert provider_ctx.get() == "qbo"
    assert gc_account_id_ctx.get() == outer
