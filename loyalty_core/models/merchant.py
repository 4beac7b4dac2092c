from datetime import datetime

from beanie import Document, Indexed
from pydantic import BaseModel, Field


class PayoutMilestone(BaseModel):
    id: str
    name: str = ""
    points_required: int
    payout_amount: str  # decimal string in payout_currency, e.g. "5.00"


class Location(BaseModel):
    id: str
    name: str = ""


class Merchant(Document):
    slug: Indexed(str, unique=True)
    name: str
    enabled: bool = True

    # Earning
    points_per_currency_unit: float = 1.0
    earn_per_visit: int = 10
    welcome_points: int = 0
    welcome_bonus_policy: str = "new_member"  # "new_member" | "first_visit"
    birthday_points: int = 0
    anniversary_points: int = 0  # member-chosen anniversary date, join date when unset
    anniversary_window_days: int = 7
    member_anniversary_points: int = 0  # yearly, from the join date
    member_anniversary_window_days: int = 7
    refund_shortfall_policy: str = "forgive"  # "forgive" | "track"

    # Payouts
    payouts_enabled: bool = False
    payout_wallet_address: str | None = None
    payout_currency: str = "USDC"
    payout_network: str = "polygon"
    payout_milestones: list[PayoutMilestone] = Field(default_factory=list)
    payout_cooldown_seconds: int = 3600

    # Provider channels: channel -> provider account id (square location, shopify shop domain, ...)
    provider_accounts: dict[str, str] = Field(default_factory=dict)
    # channel -> Fernet-encrypted signing secret
    webhook_secrets: dict[str, str] = Field(default_factory=dict)
    locations: list[Location] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "merchants"
        indexes = [
            [("provider_accounts.square", 1)],
            [("provider_accounts.shopify", 1)],
            [("provider_accounts.clover", 1)],
            [("provider_accounts.toast", 1)],
            [("provider_accounts.appointments", 1)],
        ]

    def milestone(self, milestone_id: str | None = None) -> PayoutMilestone | None:
        """Requested milestone, or the cheapest one when none is requested."""
        if not self.payout_milestones:
            return None
        if milestone_id:
            return next((m for m in self.payout_milestones if m.id == milestone_id), None)
        return min(self.payout_milestones, key=lambda m: m.points_required)
