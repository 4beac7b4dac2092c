"""Sweeps that repair state left behind by crashes between steps."""

from datetime import datetime, timedelta

from loyalty_core.core.exceptions import PayoutReconciliationError
from loyalty_core.core.logging import get_logger
from loyalty_core.models.membership_account import MembershipAccount
from loyalty_core.services import ledger as ledger_service
from loyalty_core.services import payouts as payouts_service
from loyalty_core.services import settlement as settlement_service
from loyalty_core.transfers.base import TransferGateway

log = get_logger(__name__)


async def reconcile_stuck_claims(older_than_seconds: int, gateway: TransferGateway | None = None) -> dict[str, int]:
    """Settle payout claims that never reached a terminal status."""
    counts = {"checked": 0, "settled": 0, "still_pending": 0, "needs_manual": 0}
    for claim in await payouts_service.stuck_claims(older_than_seconds):
        counts["checked"] += 1
        try:
            out = await payouts_service.reconcile_claim(claim.id, gateway)
        except PayoutReconciliationError:
            counts["needs_manual"] += 1
            continue
        if out["status"] == "PENDING":
            counts["still_pending"] += 1
        else:
            counts["settled"] += 1
    if counts["checked"]:
        log.info("payout_reconciliation_run", **counts)
    return counts


async def flush_stranded_pending(older_than_seconds: int, limit: int = 200) -> int:
    """Copy ledger entries stuck in accounts' pending lists into the transaction log."""
    cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
    accounts = await MembershipAccount.find(
        {"pending_transactions": {"$elemMatch": {"created_at": {"$lte": cutoff}}}}
    ).limit(limit).to_list()
    flushed = 0
    for account in accounts:
        flushed += await ledger_service.flush_pending(account)
    if flushed:
        log.info("ledger_pending_flushed", count=flushed, accounts=len(accounts))
    return flushed


async def replay_unapplied_events(older_than_seconds: int) -> int:
    return await settlement_service.replay_unapplied(older_than_seconds)
