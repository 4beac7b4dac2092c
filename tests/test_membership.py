import asyncio

import pytest

from loyalty_core.core.exceptions import BadRequestError, NotFoundError
from loyalty_core.models.ledger_transaction import LedgerTransaction
from loyalty_core.models.member import Member
from loyalty_core.models.membership_account import MembershipAccount
from loyalty_core.models.merchant import Merchant
from loyalty_core.services import membership as membership_service

pytestmark = pytest.mark.asyncio


async def test_normalizes_email(merchant):
    res = await membership_service.resolve(merchant, "  Jane.Doe@Example.COM ")
    assert res.member.email == "jane.doe@example.com"
    with pytest.raises(BadRequestError):
        membership_service.normalize_email("not-an-email")


async def test_welcome_bonus_granted_once(merchant):
    first = await membership_service.resolve(merchant, "a@example.com")
    second = await membership_service.resolve(merchant, "A@example.com")
    assert first.new_member and first.new_account
    assert first.welcome_points == 50
    assert not second.new_member and second.welcome_points == 0
    assert first.account.id == second.account.id
    txs = await LedgerTransaction.find(LedgerTransaction.account_id == first.account.id).to_list()
    assert [t.amount for t in txs] == [50]
    account = await MembershipAccount.get(first.account.id)
    assert account.points == 50
    assert account.pending_transactions == []


async def test_concurrent_first_contact_creates_one_account(merchant):
    results = await asyncio.gather(*[membership_service.resolve(merchant, "race@example.com") for _ in range(5)])
    assert len({r.account.id for r in results}) == 1
    assert await Member.find(Member.email == "race@example.com").count() == 1
    assert await MembershipAccount.find(MembershipAccount.merchant_id == merchant.id).count() == 1
    assert await LedgerTransaction.find(LedgerTransaction.account_id == results[0].account.id).count() == 1


async def test_existing_member_at_second_merchant_starts_at_zero(merchant):
    await membership_service.resolve(merchant, "two@example.com")
    other = Merchant(slug="tea", name="Tea Bar", welcome_points=50)
    await other.insert()
    res = await membership_service.resolve(other, "two@example.com")
    assert not res.new_member and res.new_account
    assert res.account.points == 0


async def test_first_visit_policy_rewards_every_new_membership(merchant):
    await membership_service.resolve(merchant, "three@example.com")
    other = Merchant(slug="bakery", name="Bakery", welcome_points=20, welcome_bonus_policy="first_visit")
    await other.insert()
    res = await membership_service.resolve(other, "three@example.com")
    assert res.welcome_points == 20
    assert res.account.points == 20


async def test_resolve_existing_does_not_create(merchant):
    with pytest.raises(NotFoundError):
        await membership_service.resolve_existing(merchant, "ghost@example.com")
    assert await Member.find(Member.email == "ghost@example.com").count() == 0
