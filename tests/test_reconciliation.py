import pytest

from loyalty_core.core.config import get_settings
from loyalty_core.models.failed_job import FailedJob
from loyalty_core.models.ledger_transaction import LedgerTransaction
from loyalty_core.models.membership_account import MembershipAccount
from loyalty_core.models.payout_claim import PayoutClaim
from loyalty_core.services import ledger as ledger_service
from loyalty_core.services import membership as membership_service
from loyalty_core.services import reconciliation
from loyalty_core.worker import tasks

pytestmark = pytest.mark.asyncio


async def _account(merchant, extra: int = 100) -> MembershipAccount:
    resolution = await membership_service.resolve(merchant, "sweep@example.com")
    await ledger_service.apply_delta(resolution.account.id, extra, "ADJUST", "seed")
    return resolution.account


async def test_flush_stranded_pending_entries(merchant, monkeypatch):
    account = (await membership_service.resolve(merchant, "sweep@example.com")).account
    real_write = ledger_service._write_transaction

    async def crash_before_copy(account, entry):
        return None

    monkeypatch.setattr(ledger_service, "_write_transaction", crash_before_copy)
    await ledger_service.apply_delta(account.id, 40, "ADJUST", "interrupted")
    monkeypatch.setattr(ledger_service, "_write_transaction", real_write)

    stranded = await MembershipAccount.get(account.id)
    assert len(stranded.pending_transactions) >= 1
    assert await ledger_service.get_balance(account.id) == 90

    flushed = await reconciliation.flush_stranded_pending(older_than_seconds=0)

    assert flushed >= 1
    account = await MembershipAccount.get(account.id)
    assert account.pending_transactions == []
    assert await LedgerTransaction.find(LedgerTransaction.reason == "interrupted").count() == 1
    assert await ledger_service.account_balance_drift(account.id) == 0


async def test_reserved_claim_is_refunded_by_sweep(merchant, monkeypatch):
    monkeypatch.setattr(get_settings(), "reconcile_after_seconds", 0)
    account = await _account(merchant)
    claim = PayoutClaim(
        account_id=account.id,
        merchant_id=merchant.id,
        member_id=account.member_id,
        milestone_id="m100",
        points_requested=100,
        payout_amount="5.00",
        destination_address="0x" + "d" * 40,
        state="RESERVED",
    )
    await claim.insert()
    await ledger_service.apply_delta(
        account.id, -100, "PAYOUT", "Payout", idempotency_key=f"payout:{claim.id}", linked_external_ref=str(claim.id)
    )
    assert await ledger_service.get_balance(account.id) == 50

    counts = await tasks.reconcile_payouts({"job_id": "job-1"})

    assert counts["checked"] == 1
    assert counts["settled"] == 1
    claim = await PayoutClaim.get(claim.id)
    assert claim.status == "FAILED"
    assert await ledger_service.get_balance(account.id) == 150


async def test_claim_without_reservation_is_closed(merchant):
    account = await _account(merchant)
    claim = PayoutClaim(
        account_id=account.id,
        merchant_id=merchant.id,
        member_id=account.member_id,
        milestone_id="m100",
        points_requested=100,
        payout_amount="5.00",
        destination_address="0x" + "d" * 40,
    )
    await claim.insert()

    counts = await reconciliation.reconcile_stuck_claims(older_than_seconds=0)

    assert counts["settled"] == 1
    claim = await PayoutClaim.get(claim.id)
    assert claim.state == "REJECTED"
    assert await ledger_service.get_balance(account.id) == 150


async def test_failed_job_goes_to_dead_letter(monkeypatch):
    async def boom(older_than_seconds):
        raise RuntimeError("mongo exploded")

    monkeypatch.setattr(reconciliation, "flush_stranded_pending", boom)

    with pytest.raises(RuntimeError):
        await tasks.flush_pending_ledger({"job_id": "job-7"})

    failed = await FailedJob.find_one(FailedJob.job_id == "job-7")
    assert failed.job_name == "flush_pending_ledger"
    assert "mongo exploded" in failed.reason


async def test_redis_settings_from_url(monkeypatch):
    monkeypatch.setattr(get_settings(), "redis_url", "redis://:pw@cache.internal:6380/2")
    rs = tasks.get_redis_settings()
    assert (rs.host, rs.port, rs.password, rs.database) == ("cache.internal", 6380, "pw", 2)
