from __future__ import annotations

import logging
import logging.config
import re
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional, Union

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
gc_account_id_ctx: ContextVar[Optional[str]] = ContextVar("gc_account_id", default=None)
provider_ctx: ContextVar[Optional[str]] = ContextVar("provider", default=None)


class RequestContextFilter(logging.Filter):
    """Injects request scoped context variables into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Explicit `extra=` values win over the ambient context.
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx.get()
        if getattr(record, "gc_account_id", None) is None:
            record.gc_account_id = gc_account_id_ctx.get()
        if getattr(record, "provider", None) is None:
            record.provider = provider_ctx.get()
        return True


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure JSON structured logging; HTTP and SQL chatter is held at WARNING."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_context": {
                    "()": RequestContextFilter,
                }
            },
            "formatters": {
                "json": {
                    "()": jsonlogger.JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                    "rename_fields": {"asctime": "timestamp", "levelname": "level"},
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "level": level,
                    "formatter": "json",
                    "filters": ["request_context"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": level,
                },
                "httpx": {"level": "WARNING"},
                "httpcore": {"level": "WARNING"},
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )


def set_request_context(
    request_id: Optional[str] = None,
    gc_account_id: Optional[str] = None,
    provider: Optional[str] = None,
) -> None:
    if request_id is not None:
        request_id_ctx.set(request_id)
    if gc_account_id is not None:
        gc_account_id_ctx.set(gc_account_id)
    if provider is not None:
        provider_ctx.set(provider)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    gc_account_id_ctx.set(None)
    provider_ctx.set(None)


@contextmanager
def tenant_context(gc_account_id: Optional[str], provider: Optional[str]) -> Iterator[None]:
    """Tag log records with a tenant and provider for the duration of the block."""
    account_token = gc_account_id_ctx.set(gc_account_id)
    provider_token = provider_ctx.set(provider)
    try:
        yield
    finally:
        provider_ctx.reset(provider_token)
        gc_account_id_ctx.reset(account_token)


SENSITIVE_KEYS = (
    "authorization",
    "access_token",
    "refresh_token",
    "token",
    "secret",
    "password",
    "signature",
    "verifier",
    "api_key",
)

# Stripe secret and restricted keys, wherever they appear.
STRIPE_KEY_PATTERN = re.compile(r"\b(sk|rk)_(test|live)_[A-Za-z0-9]+")

REDACTED = "***redacted***"


def _redact_value(value: Any) -> str:
    if value is None:
        return ""
    return REDACTED


def sanitize_payload(payload: Any) -> Any:
    """Remove credentials from a provider payload while keeping business fields."""

    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            sanitized: dict[str, Any] = {}
            for key, val in value.items():
                key_lower = str(key).lower()
                if any(token in key_lower for token in SENSITIVE_KEYS):
                    sanitized[key] = _redact_value(val)
                else:
                    sanitized[key] = _sanitize(val)
            return sanitized
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        if isinstance(value, str):
            return STRIPE_KEY_PATTERN.sub(REDACTED, value)
        return value

    return _sanitize(payload)


def _base_sync_log_extra(
    *,
    event: str,
    provider: Optional[str],
    entity_type: Optional[str],
    entity_id: Optional[str],
    external_id: Optional[str],
    action: Optional[str],
    payload: Any = None,
) -> dict[str, Any]:
    return {
        "event": event,
        "request_id": request_id_ctx.get(),
        "gc_account_id": gc_account_id_ctx.get(),
        "provider": provider,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "external_id": external_id,
        "action": action,
        "payload": payload,
    }


def log_sync_started(
    *,
    provider: Optional[str],
    entity_type: Optional[str],
    entity_id: Optional[str],
    external_id: Optional[str],
    action: Optional[str],
    payload: Any,
) -> None:
    logger = logging.getLogger("finsync.sync.txn")
    logger.info(
        "sync_attempt_started",
        extra=_base_sync_log_extra(
            event="sync_attempt_started",
            provider=provider,
            entity_type=entity_type,
            entity_id=entity_id,
            external_id=external_id,
            action=action,
            payload=sanitize_payload(payload),
        ),
    )


def log_sync_finished(
    *,
    provider: Optional[str],
    entity_type: Optional[str],
    entity_id: Optional[str],
    external_id: Optional[str],
    action: Optional[str],
    provider_status_code: Optional[int],
    latency_ms: Optional[float],
    result: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    logger = logging.getLogger("finsync.sync.txn")
    logger.info(
        "sync_attempt_finished",
        extra={
            **_base_sync_log_extra(
                event="sync_attempt_finished",
                provider=provider,
                entity_type=entity_type,
                entity_id=entity_id,
                external_id=external_id,
                action=action,
            ),
            "provider_status_code": provider_status_code,
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "result": result,
            "error_code": error_code,
            "error_message": error_message,
        },
    )


def log_webhook_transition(
    *,
    provider: str,
    event_id: Optional[str],
    event_type: Optional[str],
    state: str,
    error_message: Optional[str] = None,
) -> None:
    logger = logging.getLogger("finsync.webhooks")
    logger.info(
        "webhook_event_transition",
        extra={
            "event": "webhook_event_transition",
            "request_id": request_id_ctx.get(),
            "provider": provider,
            "event_id": event_id,
            "event_type": event_type,
            "state": state,
            "error_message": error_message,
        },
    )
