from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

TRANSACTION_TYPES = ("EARN", "REDEEM", "ADJUST", "PAYOUT")


class LedgerTransaction(Document):
    """Append-only; the account balance is the sum of `amount`."""
    account_id: PydanticObjectId
    merchant_id: PydanticObjectId
    member_id: PydanticObjectId
    type: str
    amount: int  # positive = credit, negative = debit
    balance_after: int
    reason: str
    status: str = "SUCCESS"
    linked_external_ref: str | None = None
    idempotency_key: Indexed(str, unique=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "ledger_transactions"
        indexes = [
            [("account_id", 1), ("created_at", -1)],
            [("merchant_id", 1), ("created_at", -1)],
        ]
