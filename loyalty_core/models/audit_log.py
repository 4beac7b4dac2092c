from datetime import datetime
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field


class AuditLog(Document):
    """Append-only record of money-affecting actions (payouts, wallet alerts)."""
    merchant_id: PydanticObjectId | None = None
    event_type: str  # e.g. "payout_succeeded", "payout_wallet_underfunded"
    entity_type: str
    entity_id: str | None = None
    account_id: PydanticObjectId | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("merchant_id", 1), ("event_type", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
        ]
