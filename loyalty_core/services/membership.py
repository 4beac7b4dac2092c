"""Find-or-create members and merchant membership accounts (welcome bonus exactly once)."""

import re
from dataclasses import dataclass

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from loyalty_core.core.exceptions import BadRequestError, NotFoundError
from loyalty_core.core.logging import get_logger
from loyalty_core.models.member import Member
from loyalty_core.models.membership_account import MembershipAccount, PendingEntry
from loyalty_core.models.merchant import Merchant
from loyalty_core.services import ledger as ledger_service

log = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class Resolution:
    member: Member
    account: MembershipAccount
    new_member: bool
    new_account: bool
    welcome_points: int = 0


def normalize_email(email: str | None) -> str:
    email = (email or "").strip().lower()
    if not email or len(email) > 254 or not _EMAIL_RE.match(email):
        raise BadRequestError("Invalid email address", details={"email": email})
    return email


async def find_member(email: str) -> Member | None:
    return await Member.find_one(Member.email == normalize_email(email))


async def get_or_create_member(email: str, first_name: str = "", last_name: str = "") -> tuple[Member, bool]:
    """Return (member, created). A lost insert race returns the winner's record."""
    email = normalize_email(email)
    member = await Member.find_one(Member.email == email)
    if member:
        return member, False
    member = Member(email=email, first_name=first_name or "", last_name=last_name or "")
    try:
        await member.insert()
    except DuplicateKeyError:
        member = await Member.find_one(Member.email == email)
        if not member:
            raise
        return member, False
    log.info("member_created", member_id=str(member.id))
    return member, True


def _welcome_amount(merchant: Merchant, new_member: bool) -> int:
    if merchant.welcome_points <= 0:
        return 0
    if merchant.welcome_bonus_policy == "first_visit":
        return merchant.welcome_points
    return merchant.welcome_points if new_member else 0


async def get_account(merchant_id: PydanticObjectId, member_id: PydanticObjectId) -> MembershipAccount | None:
    return await MembershipAccount.find_one(
        MembershipAccount.merchant_id == merchant_id,
        MembershipAccount.member_id == member_id,
    )


async def get_or_create_account(merchant: Merchant, member: Member, new_member: bool) -> tuple[MembershipAccount, bool, int]:
    """
    Return (account, created, welcome_points). The welcome bonus is part of the
    account insert itself, so it is granted exactly once per (merchant, member).
    """
    account = await get_account(merchant.id, member.id)
    if account:
        return account, False, 0
    welcome = _welcome_amount(merchant, new_member)
    account = MembershipAccount(merchant_id=merchant.id, member_id=member.id)
    if welcome:
        account.points = welcome
        account.pending_transactions = [
            PendingEntry(
                tx_id=PydanticObjectId(),
                type="EARN",
                amount=welcome,
                balance_after=welcome,
                reason="Welcome bonus",
                idempotency_key=f"welcome:{merchant.id}:{member.id}",
            )
        ]
    try:
        await account.insert()
    except DuplicateKeyError:
        existing = await get_account(merchant.id, member.id)
        if not existing:
            raise
        return existing, False, 0
    if welcome:
        await ledger_service.flush_pending(account)
        log.info("welcome_bonus_awarded", merchant_id=str(merchant.id), member_id=str(member.id), points=welcome)
    return account, True, welcome


async def resolve(merchant: Merchant, email: str, first_name: str = "", last_name: str = "") -> Resolution:
    """Member + account for (merchant, email), creating both as needed."""
    member, new_member = await get_or_create_member(email, first_name, last_name)
    account, new_account, welcome = await get_or_create_account(merchant, member, new_member)
    return Resolution(member, account, new_member, new_account, welcome)


async def resolve_existing(merchant: Merchant, email: str) -> tuple[Member, MembershipAccount]:
    """Lookup only; raise NotFoundError when the member has no account at this merchant."""
    member = await find_member(email)
    if not member:
        raise NotFoundError("Member not found")
    account = await get_account(merchant.id, member.id)
    if not account:
        raise NotFoundError("Member not found")
    return member, account
