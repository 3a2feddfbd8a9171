from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from finsync.schemas.entities import Provider


Environment = Literal["sandbox", "prod"]
TokenState = Literal["valid", "expiring", "expired"]


class CredentialSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider: Provider
    environment: Environment
    account_id: str
    access_token_masked: str = "[redacted]"
    token_state: Optional[TokenState] = None
    access_expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    scopes: list[str] | None = None
    refresh_counter: int
    revoked_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class CredentialListResponse(BaseModel):
    gc_account_id: uuid.UUID
    credentials: list[CredentialSummary]


class CredentialRotateResponse(BaseModel):
    gc_account_id: uuid.UUID
    credential_id: uuid.UUID
    provider: Provider
    refreshed: bool
    refresh_counter: int
    access_expires_at: Optional[datetime] = None


class OAuthCallbackResponse(BaseModel):
    message: str = "OAuth flow completed"
    gc_account_id: uuid.UUID
    provider: Provider
    credential_id: uuid.UUID
    account_id: str
    environment: Environment
    access_expires_at: Optional[datetime] = None
    scopes: list[str] | None = None


class CheckoutSessionRequest(BaseModel):
    price_id: str = Field(min_length=1, max_length=255)
    success_url: HttpUrl
    cancel_url: HttpUrl
    customer_email: Optional[str] = Field(default=None, max_length=255)
    customer_id: Optional[str] = Field(default=None, max_length=255)


class CheckoutSessionResponse(BaseModel):
    id: str
    url: Optional[str] = None
    gc_account_id: uuid.UUID


class InvoiceCheckoutRequest(BaseModel):
    success_url: HttpUrl
    cancel_url: HttpUrl
    customer_email: Optional[str] = Field(default=None, max_length=255)


class InvoiceCheckoutResponse(BaseModel):
    id: str
    url: Optional[str] = None
    gc_account_id: uuid.UUID
    invoice_id: uuid.UUID
