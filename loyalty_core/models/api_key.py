from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

PERMISSIONS = (
    "write:orders",
    "read:orders",
    "read:points",
    "write:points",
    "write:wallets",
    "admin:payouts",
    "admin:settings",
)


class ApiKey(Document):
    merchant_id: PydanticObjectId
    name: str
    key_prefix: str  # first characters, for display only
    key_hash: Indexed(str, unique=True)
    permissions: list[str] = Field(default_factory=lambda: ["write:orders", "read:orders"])
    rate_limit: int = 1000  # requests per hour
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "api_keys"
        indexes = [[("merchant_id", 1)]]

    def allows(self, permission: str) -> bool:
        return "*" in self.permissions or permission in self.permissions
