from datetime import datetime, timedelta

import pytest

from loyalty_core.core.exceptions import BadRequestError, ConflictError, StorageTransientError
from loyalty_core.models.member import Member
from loyalty_core.models.membership_account import MembershipAccount
from loyalty_core.services import ledger as ledger_service
from loyalty_core.services import membership as membership_service
from loyalty_core.services import points as points_service

pytestmark = pytest.mark.asyncio

EMAIL = "regular@example.com"


async def _join(merchant):
    return await membership_service.resolve(merchant, EMAIL)


async def test_within_window_handles_year_end_and_leap_day():
    assert points_service.within_window(datetime(2010, 12, 30), 7, datetime(2027, 1, 3))
    assert points_service.within_window(datetime(2010, 1, 2), 7, datetime(2026, 12, 28))
    assert not points_service.within_window(datetime(2010, 6, 1), 7, datetime(2026, 6, 20))
    assert points_service.within_window(datetime(2012, 2, 29), 0, datetime(2027, 2, 28))


async def test_birthday_once_per_year(merchant):
    await _join(merchant)
    first = await points_service.claim_birthday(merchant, EMAIL, today=datetime(2026, 5, 1))
    assert first.amount == 25
    with pytest.raises(ConflictError):
        await points_service.claim_birthday(merchant, EMAIL, today=datetime(2026, 11, 1))
    next_year = await points_service.claim_birthday(merchant, EMAIL, today=datetime(2027, 5, 1))
    assert next_year.balance_after == 100


async def test_birthday_retry_after_failed_credit(merchant, monkeypatch):
    res = await _join(merchant)
    real_apply_delta = ledger_service.apply_delta

    async def unavailable(*args, **kwargs):
        raise StorageTransientError()

    monkeypatch.setattr(ledger_service, "apply_delta", unavailable)
    with pytest.raises(StorageTransientError):
        await points_service.claim_birthday(merchant, EMAIL, today=datetime(2026, 5, 1))
    account = await MembershipAccount.get(res.account.id)
    assert account.last_birthday_claim_year == 2026
    assert account.points == 50

    monkeypatch.setattr(ledger_service, "apply_delta", real_apply_delta)
    result = await points_service.claim_birthday(merchant, EMAIL, today=datetime(2026, 5, 2))
    assert result.amount == 25
    assert result.balance_after == 75
    with pytest.raises(ConflictError):
        await points_service.claim_birthday(merchant, EMAIL, today=datetime(2026, 5, 3))


async def test_anniversary_uses_chosen_date(merchant):
    merchant.anniversary_points = 40
    await merchant.save()
    await _join(merchant)
    await points_service.set_anniversary_date(merchant, EMAIL, datetime(2015, 6, 20).date())

    with pytest.raises(BadRequestError):
        await points_service.claim_anniversary(merchant, EMAIL, today=datetime(2026, 7, 10))
    result = await points_service.claim_anniversary(merchant, EMAIL, today=datetime(2026, 6, 24))
    assert result.amount == 40
    with pytest.raises(ConflictError):
        await points_service.claim_anniversary(merchant, EMAIL, today=datetime(2026, 6, 25))
    # birthday keeps its own yearly marker
    birthday = await points_service.claim_birthday(merchant, EMAIL, today=datetime(2026, 6, 25))
    assert birthday.balance_after == 50 + 40 + 25


async def test_anniversary_falls_back_to_join_date(merchant):
    merchant.anniversary_points = 40
    await merchant.save()
    res = await _join(merchant)
    member = await Member.get(res.member.id)
    result = await points_service.claim_anniversary(merchant, EMAIL, today=member.created_at + timedelta(days=2))
    assert result.amount == 40


async def test_anniversary_disabled(merchant):
    await _join(merchant)
    with pytest.raises(BadRequestError):
        await points_service.claim_anniversary(merchant, EMAIL)
    with pytest.raises(BadRequestError):
        await points_service.claim_member_anniversary(merchant, EMAIL)


async def test_member_anniversary_from_join_date(merchant):
    merchant.member_anniversary_points = 60
    await merchant.save()
    res = await _join(merchant)
    joined = datetime(2025, 3, 10, 9, 30)
    await MembershipAccount.find_one({"_id": res.account.id}).update({"$set": {"created_at": joined}})

    with pytest.raises(BadRequestError):
        await points_service.claim_member_anniversary(merchant, EMAIL, today=joined + timedelta(days=1))
    with pytest.raises(BadRequestError):
        await points_service.claim_member_anniversary(merchant, EMAIL, today=joined + timedelta(days=365 + 60))

    one_year = datetime(2026, 3, 12)
    result = await points_service.claim_member_anniversary(merchant, EMAIL, today=one_year)
    assert result.amount == 60
    with pytest.raises(ConflictError):
        await points_service.claim_member_anniversary(merchant, EMAIL, today=one_year + timedelta(days=1))
