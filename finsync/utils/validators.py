from __future__ import annotations

import uuid
from typing import Optional, cast

from fastapi import HTTPException, status

from finsync.db.models import ENTITY_TYPES, PROVIDERS
from finsync.schemas.credentials import Environment


_ENVIRONMENT_ALIASES = {
    "sandbox": "sandbox",
    "prod": "prod",
    "production": "prod",
}


def parse_uuid(value: str, field_name: str = "identifier") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field_name} format",
        ) from exc


def resolve_environment(
    value: Optional[str],
    default_env: Environment,
) -> Environment:
    if value is None:
        return default_env
    resolved = _ENVIRONMENT_ALIASES.get(value.lower())
    if resolved is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid environment value",
        )
    return cast(Environment, resolved)


def resolve_provider(value: str) -> str:
    normalized = value.lower()
    if normalized not in PROVIDERS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider: {value}",
        )
    return normalized


def resolve_entity_type(value: str) -> str:
    normalized = value.lower()
    if normalized not in ENTITY_TYPES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown entity type: {value}",
        )
    return normalized


def normalize_older_than(value: Optional[int], default: int) -> int:
    if value is None:
        return default
    if value < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="older_than must be >= 0",
        )
    return value
