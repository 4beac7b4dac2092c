from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
import pymongo


class PendingEntry(BaseModel):
    """Ledger entry applied to `points` but not yet copied to ledger_transactions."""
    tx_id: PydanticObjectId
    type: str
    amount: int
    balance_after: int
    reason: str
    idempotency_key: str
    linked_external_ref: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class MembershipAccount(Document):
    merchant_id: PydanticObjectId
    member_id: PydanticObjectId
    points: int = 0
    version: int = 0
    pending_transactions: list[PendingEntry] = Field(default_factory=list)
    wallet_address: str | None = None
    last_birthday_claim_year: int | None = None
    last_anniversary_claim_year: int | None = None
    last_member_anniversary_claim_year: int | None = None
    refund_shortfall_points: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "membership_accounts"
        indexes = [
            pymongo.IndexModel(
                [("merchant_id", pymongo.ASCENDING), ("member_id", pymongo.ASCENDING)],
                unique=True,
            ),
            [("member_id", 1)],
            [("pending_transactions.tx_id", 1)],
        ]
