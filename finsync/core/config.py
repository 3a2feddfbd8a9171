from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "finsync"
    app_version: str = "0.1.0"
    environment: Literal["sandbox", "prod"] = Field(default="sandbox", alias="ENV")

    api_key: str = Field(..., alias="API_KEY")
    fernet_key: str = Field(..., alias="FERNET_KEY")

    database_url: str = Field(..., alias="DATABASE_URL")

    qbo_client_id: str = Field(..., alias="QBO_CLIENT_ID")
    qbo_client_secret: str = Field(..., alias="QBO_CLIENT_SECRET")
    qbo_redirect_uri: HttpUrl = Field(..., alias="QBO_REDIRECT_URI")
    qbo_webhook_verifier_token: Optional[str] = Field(
        default=None, alias="QBO_WEBHOOK_VERIFIER_TOKEN"
    )
    qbo_default_income_item: str = Field(default="1", alias="QBO_DEFAULT_INCOME_ITEM")
    qbo_default_expense_account: Optional[str] = Field(
        default=None, alias="QBO_DEFAULT_EXPENSE_ACCOUNT"
    )
    qbo_default_deposit_account: Optional[str] = Field(
        default=None, alias="QBO_DEFAULT_DEPOSIT_ACCOUNT"
    )

    stripe_secret_key: str = Field(..., alias="STRIPE_SECRET_KEY")
    stripe_client_id: Optional[str] = Field(default=None, alias="STRIPE_CLIENT_ID")
    stripe_redirect_uri: Optional[HttpUrl] = Field(default=None, alias="STRIPE_REDIRECT_URI")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE")
    stripe_default_currency: str = Field(default="usd", alias="STRIPE_DEFAULT_CURRENCY")
    stripe_platform_fee_percentage: float = Field(
        default=0.025, ge=0, lt=1, alias="STRIPE_PLATFORM_FEE_PERCENTAGE"
    )

    http_timeout_seconds: float = Field(default=15.0, alias="HTTP_TIMEOUT_SECONDS")
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_max_wait_seconds: float = Field(default=15.0, alias="RETRY_MAX_WAIT")

    sync_stale_seconds: int = Field(default=60, alias="SYNC_STALE_SECONDS")

    allow_docs_without_auth: bool = Field(default=False, alias="ALLOW_DOCS_WITHOUT_AUTH")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", alias="LOG_LEVEL")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
