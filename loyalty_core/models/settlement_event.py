from datetime import datetime
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field
import pymongo


class SettlementEvent(Document):
    """Canonical record of one external purchase/refund/visit; never mutated except processing fields."""
    merchant_id: PydanticObjectId
    source_channel: str  # "webhook" | "api" | "scan"
    external_source: str  # "square", "shopify", "api", "scan", ...
    external_id: str
    idempotency_scope: str
    customer_email: str | None = None
    amount_minor: int = 0
    currency: str = "USD"
    occurred_at: datetime = Field(default_factory=datetime.utcnow)
    kind: str = "CHARGE"  # "CHARGE" | "REFUND"
    refund_of: str | None = None
    points_rate: float = 0.0
    points_awarded: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Processing bookkeeping
    status: str = "recorded"  # recorded | processed | skipped | refunded
    skip_reason: str | None = None
    member_id: PydanticObjectId | None = None
    account_id: PydanticObjectId | None = None
    ledger_transaction_id: PydanticObjectId | None = None
    points_refunded: int = 0
    refund_shortfall: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: datetime | None = None

    class Settings:
        name = "settlement_events"
        indexes = [
            pymongo.IndexModel(
                [
                    ("merchant_id", pymongo.ASCENDING),
                    ("external_source", pymongo.ASCENDING),
                    ("external_id", pymongo.ASCENDING),
                ],
                unique=True,
            ),
            pymongo.IndexModel([("idempotency_scope", pymongo.ASCENDING)], unique=True),
            [("merchant_id", 1), ("created_at", -1)],
            [("status", 1), ("created_at", 1)],
        ]
