from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field

# state: ELIGIBLE -> RESERVED -> TRANSFER_PENDING -> SUCCESS | FAILED; REJECTED if the reservation fails
CLAIM_STATES = ("ELIGIBLE", "RESERVED", "TRANSFER_PENDING", "SUCCESS", "FAILED", "REJECTED")


class PayoutClaim(Document):
    account_id: PydanticObjectId
    merchant_id: PydanticObjectId
    member_id: PydanticObjectId
    milestone_id: str
    points_requested: int
    payout_amount: str
    currency: str = "USDC"
    network: str = "polygon"
    destination_address: str
    status: str = "PENDING"  # PENDING | SUCCESS | FAILED; set to a terminal value exactly once
    state: str = "ELIGIBLE"
    transfer_ref: str | None = None
    reserve_transaction_id: PydanticObjectId | None = None
    refund_transaction_id: PydanticObjectId | None = None
    failure_code: str | None = None
    failure_reason: str | None = None
    needs_reconciliation: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "payout_claims"
        indexes = [
            [("account_id", 1), ("status", 1), ("completed_at", -1)],
            [("state", 1), ("updated_at", 1)],
            [("needs_reconciliation", 1)],
        ]
