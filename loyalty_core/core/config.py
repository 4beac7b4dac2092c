from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000"]


def _parse_cors_origins(v: Any) -> List[str]:
    if v is None or v == "":
        return _DEFAULT_CORS.copy()
    if isinstance(v, list):
        return [x for x in v if isinstance(x, str) and x.strip()]
    s = str(v).strip()
    if s.startswith("["):
        import json
        try:
            out = json.loads(s)
        except ValueError:
            return _DEFAULT_CORS.copy()
        return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
    return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="loyalty", alias="MONGODB_DB_NAME")

    # Redis (rate guard + ARQ)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Fernet key for merchant webhook secrets (base64)
    token_encryption_key: str = Field(default="", alias="TOKEN_ENCRYPTION_KEY")

    # In-store QR tokens
    qr_secret: str = Field(default="", alias="QR_SECRET")
    qr_max_age_seconds: int = Field(default=365 * 24 * 3600, alias="QR_MAX_AGE_SECONDS")

    # Provider webhook secrets (fallback when a merchant has none of its own)
    square_webhook_signature_key: str = Field(default="", alias="SQUARE_WEBHOOK_SIGNATURE_KEY")
    square_webhook_url: str = Field(
        default="http://localhost:8000/v1/webhooks/square",
        alias="SQUARE_WEBHOOK_URL",
    )
    shopify_webhook_secret: str = Field(default="", alias="SHOPIFY_WEBHOOK_SECRET")
    clover_webhook_secret: str = Field(default="", alias="CLOVER_WEBHOOK_SECRET")
    toast_webhook_secret: str = Field(default="", alias="TOAST_WEBHOOK_SECRET")
    appointment_webhook_secret: str = Field(default="", alias="APPOINTMENT_WEBHOOK_SECRET")

    # Transfer gateway
    transfer_gateway_backend: str = Field(default="http", alias="TRANSFER_GATEWAY_BACKEND")
    transfer_gateway_url: str = Field(default="", alias="TRANSFER_GATEWAY_URL")
    transfer_gateway_token: str = Field(default="", alias="TRANSFER_GATEWAY_TOKEN")
    transfer_timeout_seconds: float = Field(default=30.0, alias="TRANSFER_TIMEOUT_SECONDS")

    # Rate guard
    payout_rate_limit: int = Field(default=10, alias="PAYOUT_RATE_LIMIT")
    payout_rate_window_seconds: int = Field(default=600, alias="PAYOUT_RATE_WINDOW_SECONDS")
    scan_rate_limit: int = Field(default=20, alias="SCAN_RATE_LIMIT")
    scan_rate_window_seconds: int = Field(default=3600, alias="SCAN_RATE_WINDOW_SECONDS")

    # Ledger
    ledger_cas_retries: int = Field(default=8, alias="LEDGER_CAS_RETRIES")
    storage_retry_attempts: int = Field(default=3, alias="STORAGE_RETRY_ATTEMPTS")
    storage_retry_base_delay: float = Field(default=0.05, alias="STORAGE_RETRY_BASE_DELAY")

    # Payouts
    payout_refund_attempts: int = Field(default=5, alias="PAYOUT_REFUND_ATTEMPTS")
    payout_refund_base_delay: float = Field(default=0.2, alias="PAYOUT_REFUND_BASE_DELAY")
    reconcile_after_seconds: int = Field(default=300, alias="RECONCILE_AFTER_SECONDS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))


@lru_cache
def get_settings() -> Settings:
    return Settings()
