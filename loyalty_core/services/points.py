"""Merchant-initiated point operations: redeem, manual adjust, yearly birthday and anniversary bonuses."""

import calendar
from datetime import date, datetime

from beanie.odm.queries.update import UpdateResponse

from loyalty_core.core.exceptions import BadRequestError, ConflictError
from loyalty_core.core.logging import get_logger
from loyalty_core.models.member import Member
from loyalty_core.models.membership_account import MembershipAccount
from loyalty_core.models.merchant import Merchant
from loyalty_core.services import ledger as ledger_service
from loyalty_core.services import membership as membership_service

log = get_logger(__name__)


async def get_summary(merchant: Merchant, email: str, limit: int = 20) -> dict:
    member, account = await membership_service.resolve_existing(merchant, email)
    transactions = await ledger_service.list_transactions(account.id, limit=limit)
    return {
        "member_id": str(member.id),
        "email": member.email,
        "points": account.points,
        "wallet_address": account.wallet_address,
        "refund_shortfall_points": account.refund_shortfall_points,
        "transactions": [
            {
                "id": str(t.id),
                "type": t.type,
                "amount": t.amount,
                "balance_after": t.balance_after,
                "reason": t.reason,
                "created_at": t.created_at.isoformat(),
            }
            for t in transactions
        ],
    }


async def redeem(merchant: Merchant, email: str, points: int, reward: str, idempotency_key: str | None = None) -> ledger_service.LedgerResult:
    """Spend points on a store reward."""
    if points <= 0:
        raise BadRequestError("Points must be positive")
    _, account = await membership_service.resolve_existing(merchant, email)
    key = f"redeem:{merchant.id}:{idempotency_key}" if idempotency_key else None
    return await ledger_service.apply_delta(account.id, -points, "REDEEM", f"Redeemed: {reward}", idempotency_key=key)


async def adjust(merchant: Merchant, email: str, amount: int, reason: str, idempotency_key: str | None = None) -> ledger_service.LedgerResult:
    """Manual correction by the merchant; creates the membership if it does not exist."""
    if amount == 0:
        raise BadRequestError("Amount must be non-zero")
    if not reason.strip():
        raise BadRequestError("Reason is required")
    resolution = await membership_service.resolve(merchant, email)
    key = f"adjust:{merchant.id}:{idempotency_key}" if idempotency_key else None
    return await ledger_service.apply_delta(resolution.account.id, amount, "ADJUST", reason.strip(), idempotency_key=key)


def within_window(anchor: datetime, window_days: int, today: datetime) -> bool:
    """True when today is within window_days of the anchor's month/day (checked across year ends)."""
    for year in (today.year - 1, today.year, today.year + 1):
        day = anchor.day
        if anchor.month == 2 and day == 29 and not calendar.isleap(year):
            day = 28
        if abs((date(year, anchor.month, day) - today.date()).days) <= window_days:
            return True
    return False


async def _claim_yearly(
    account: MembershipAccount,
    marker: str,
    kind: str,
    points: int,
    reason: str,
    year: int,
) -> ledger_service.LedgerResult:
    """
    Claim a once-per-year bonus. The year marker is set atomically first; a
    marker already set without its keyed ledger entry means an earlier attempt
    failed after marking, so the delta is applied now.
    """
    key = f"{kind}:{account.id}:{year}"
    marked = await MembershipAccount.find_one(
        {"_id": account.id, marker: {"$ne": year}}
    ).update(
        {"$set": {marker: year}},
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if marked is None and await ledger_service.find_by_key(account.id, key) is not None:
        raise ConflictError(f"{reason} already claimed this year", details={"year": year})
    result = await ledger_service.apply_delta(account.id, points, "EARN", f"{reason} {year}", idempotency_key=key)
    if result.duplicate:
        raise ConflictError(f"{reason} already claimed this year", details={"year": year})
    log.info("yearly_bonus_claimed", kind=kind, account_id=str(account.id), year=year, points=points)
    return result


async def claim_birthday(merchant: Merchant, email: str, today: datetime | None = None) -> ledger_service.LedgerResult:
    """Once per calendar year."""
    if merchant.birthday_points <= 0:
        raise BadRequestError("Birthday rewards are not enabled")
    _, account = await membership_service.resolve_existing(merchant, email)
    year = (today or datetime.utcnow()).year
    return await _claim_yearly(
        account, "last_birthday_claim_year", "birthday", merchant.birthday_points, "Birthday reward", year
    )


async def claim_anniversary(merchant: Merchant, email: str, today: datetime | None = None) -> ledger_service.LedgerResult:
    """Yearly reward near the member's anniversary date (their join date when none is set)."""
    if merchant.anniversary_points <= 0:
        raise BadRequestError("Anniversary rewards are not enabled")
    member, account = await membership_service.resolve_existing(merchant, email)
    today = today or datetime.utcnow()
    anchor = member.anniversary_date or member.created_at
    if not within_window(anchor, merchant.anniversary_window_days, today):
        raise BadRequestError(
            f"Anniversary rewards can only be claimed within {merchant.anniversary_window_days} days of your anniversary"
        )
    return await _claim_yearly(
        account, "last_anniversary_claim_year", "anniversary", merchant.anniversary_points, "Anniversary reward", today.year
    )


async def claim_member_anniversary(merchant: Merchant, email: str, today: datetime | None = None) -> ledger_service.LedgerResult:
    """Yearly reward near the date the member joined this merchant."""
    if merchant.member_anniversary_points <= 0:
        raise BadRequestError("Member anniversary rewards are not enabled")
    _, account = await membership_service.resolve_existing(merchant, email)
    today = today or datetime.utcnow()
    if today.year <= account.created_at.year:
        raise BadRequestError("Member anniversary rewards start one year after joining")
    if not within_window(account.created_at, merchant.member_anniversary_window_days, today):
        raise BadRequestError(
            f"Member anniversary rewards can only be claimed within "
            f"{merchant.member_anniversary_window_days} days of your membership anniversary"
        )
    return await _claim_yearly(
        account,
        "last_member_anniversary_claim_year",
        "member-anniversary",
        merchant.member_anniversary_points,
        "Member anniversary reward",
        today.year,
    )


async def set_anniversary_date(merchant: Merchant, email: str, anniversary: date) -> Member:
    member, _ = await membership_service.resolve_existing(merchant, email)
    value = datetime(anniversary.year, anniversary.month, anniversary.day)
    await Member.find_one({"_id": member.id}).update({"$set": {"anniversary_date": value}})
    member.anniversary_date = value
    return member
