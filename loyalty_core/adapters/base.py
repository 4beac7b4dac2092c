from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import BaseModel, Field

from loyalty_core.core.config import get_settings
from loyalty_core.core.encryption import decrypt_secret
from loyalty_core.core.security import signatures_match
from loyalty_core.models.merchant import Merchant


class NormalizedEvent(BaseModel):
    """Provider payload reduced to what settlement needs."""
    external_id: str
    kind: str = "CHARGE"  # "CHARGE" | "REFUND"
    customer_email: str | None = None
    first_name: str = ""
    last_name: str = ""
    amount_minor: int = 0
    currency: str = "USD"
    occurred_at: datetime | None = None
    refund_of: str | None = None
    fixed_points: int | None = None  # visit-based earning ignores amount x rate
    metadata: dict[str, Any] = Field(default_factory=dict)


def header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup for plain dicts and Starlette headers."""
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class ProviderAdapter(ABC):
    channel: str
    signature_header: str
    global_secret_setting: str

    @abstractmethod
    def account_ref(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str | None:
        """Provider-side account id used to find the merchant."""
        ...

    @abstractmethod
    def expected_signature(self, raw_body: bytes, secret: str) -> str:
        ...

    @abstractmethod
    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str], merchant: Merchant) -> list[NormalizedEvent]:
        """Zero or more events; unhandled event types yield an empty list."""
        ...

    def secret_for(self, merchant: Merchant | None) -> str:
        if merchant is not None:
            encrypted = merchant.webhook_secrets.get(self.channel)
            if encrypted:
                secret = decrypt_secret(encrypted)
                if secret:
                    return secret
        return getattr(get_settings(), self.global_secret_setting, "") or ""

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        if not secret:
            return False
        return signatures_match(self.expected_signature(raw_body, secret), header(headers, self.signature_header))
