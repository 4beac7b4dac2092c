"""Payout settlement: reserve points, transfer via the gateway, then commit or refund.

ELIGIBLE -> RESERVED -> TRANSFER_PENDING -> SUCCESS | FAILED
A failed transfer is always followed by a compensating refund. If the refund
cannot be stored, the claim stays TRANSFER_PENDING with needs_reconciliation set.
"""

import asyncio
import re
from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse
from pymongo.errors import PyMongoError

from loyalty_core.core.audit import log_event
from loyalty_core.core.config import get_settings
from loyalty_core.core.exceptions import (
    BadRequestError,
    InsufficientBalanceError,
    NotEligibleError,
    NotFoundError,
    PayoutReconciliationError,
    RateLimitedError,
    StorageTransientError,
    TransferFailureError,
)
from loyalty_core.core.logging import get_logger
from loyalty_core.models.membership_account import MembershipAccount
from loyalty_core.models.merchant import Merchant, PayoutMilestone
from loyalty_core.models.payout_claim import PayoutClaim
from loyalty_core.services import ledger as ledger_service
from loyalty_core.services import membership as membership_service
from loyalty_core.services.rate_limit import check_and_increment
from loyalty_core.transfers.base import TransferGateway, TransferRequest, TransferResult, get_transfer_gateway

log = get_logger(__name__)

WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
UNDER_VERIFICATION_MESSAGE = "Your payout is under additional verification. Your points have been returned."
FAILED_MESSAGE = "Payout could not be completed. Your points have been returned."


def _eligibility_error(merchant: Merchant, account: MembershipAccount, milestone: PayoutMilestone | None) -> NotEligibleError | None:
    if not merchant.enabled or not merchant.payouts_enabled or milestone is None:
        return NotEligibleError("NOT_ENABLED", "Payouts are not enabled for this merchant")
    if not merchant.payout_wallet_address or not account.wallet_address:
        return NotEligibleError("NO_WALLET_CONFIGURED", "No payout wallet configured")
    if account.points < milestone.points_required:
        return NotEligibleError(
            "INSUFFICIENT_POINTS",
            "Not enough points for this payout",
            details={"current_points": account.points, "points_required": milestone.points_required},
        )
    return None


def _pick_milestone(merchant: Merchant, milestone_id: str | None) -> PayoutMilestone | None:
    milestone = merchant.milestone(milestone_id)
    if milestone_id and milestone is None:
        raise BadRequestError("Unknown payout milestone", details={"milestone_id": milestone_id})
    return milestone


async def get_eligibility(merchant: Merchant, email: str, milestone_id: str | None = None) -> dict[str, Any]:
    """Read-only eligibility summary for the claim page."""
    _, account = await membership_service.resolve_existing(merchant, email)
    milestone = _pick_milestone(merchant, milestone_id)
    error = _eligibility_error(merchant, account, milestone)
    if error is None:
        error = await _cooldown_error(merchant, account)
    milestone_points = milestone.points_required if milestone else 0
    return {
        "eligible": error is None,
        "reason": error.reason if error else None,
        "current_points": account.points,
        "points_needed": max(0, milestone_points - account.points),
        "milestone_points": milestone_points,
        "milestone_id": milestone.id if milestone else None,
        "payout_amount": milestone.payout_amount if milestone else None,
        "currency": merchant.payout_currency,
        "network": merchant.payout_network,
        "has_wallet": bool(account.wallet_address),
        "milestones": [
            {
                "id": m.id,
                "name": m.name,
                "points_required": m.points_required,
                "payout_amount": m.payout_amount,
                "reached": account.points >= m.points_required,
            }
            for m in sorted(merchant.payout_milestones, key=lambda m: m.points_required)
        ],
    }


async def _cooldown_error(merchant: Merchant, account: MembershipAccount) -> NotEligibleError | None:
    if merchant.payout_cooldown_seconds <= 0:
        return None
    since = datetime.utcnow() - timedelta(seconds=merchant.payout_cooldown_seconds)
    recent = await PayoutClaim.find_one(
        PayoutClaim.account_id == account.id,
        PayoutClaim.status == "SUCCESS",
        PayoutClaim.completed_at >= since,
    )
    if recent is None:
        return None
    retry_after = int((recent.completed_at - since).total_seconds())
    return NotEligibleError(
        "TOO_SOON",
        "Please wait before claiming another payout",
        details={"retry_after_seconds": max(1, retry_after)},
    )


async def set_wallet_address(merchant: Merchant, email: str, address: str) -> MembershipAccount:
    address = (address or "").strip()
    if not WALLET_RE.match(address):
        raise BadRequestError("Invalid wallet address")
    _, account = await membership_service.resolve_existing(merchant, email)
    await MembershipAccount.find_one({"_id": account.id}).update(
        {"$set": {"wallet_address": address, "updated_at": datetime.utcnow()}}
    )
    account.wallet_address = address
    log.info("wallet_address_set", account_id=str(account.id))
    return account


async def _set_state(claim: PayoutClaim, state: str, **fields: Any) -> None:
    values = {"state": state, "updated_at": datetime.utcnow(), **fields}
    await PayoutClaim.find_one({"_id": claim.id}).update({"$set": values})
    for k, v in values.items():
        setattr(claim, k, v)


async def _finalize(claim: PayoutClaim, status: str, state: str, **fields: Any) -> bool:
    """Set the terminal status; only the first writer wins. Returns False if already terminal."""
    now = datetime.utcnow()
    values = {"status": status, "state": state, "updated_at": now, "completed_at": now, **fields}
    updated = await PayoutClaim.find_one({"_id": claim.id, "status": "PENDING"}).update(
        {"$set": values},
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        log.warning("payout_already_terminal", claim_id=str(claim.id), wanted=status)
        return False
    for k, v in values.items():
        setattr(claim, k, v)
    return True


async def _refund(claim: PayoutClaim, reason: str, error_code: str | None) -> None:
    """Compensating refund with retries. Exhaustion leaves the claim for manual reconciliation."""
    settings = get_settings()
    key = f"payout-refund:{claim.id}"
    last_error: Exception | None = None
    for attempt in range(settings.payout_refund_attempts):
        try:
            result = await ledger_service.apply_delta(
                claim.account_id,
                claim.points_requested,
                "ADJUST",
                "payout refund",
                idempotency_key=key,
                linked_external_ref=str(claim.id),
            )
        except (StorageTransientError, PyMongoError) as e:
            last_error = e
            log.warning("payout_refund_retry", claim_id=str(claim.id), attempt=attempt + 1, error=str(e))
            if attempt < settings.payout_refund_attempts - 1:
                await asyncio.sleep(settings.payout_refund_base_delay * (2 ** attempt))
            continue
        await _finalize(
            claim,
            "FAILED",
            "FAILED",
            refund_transaction_id=result.transaction_id,
            failure_code=error_code,
            failure_reason=reason[:500],
            needs_reconciliation=False,
        )
        log.info("payout_refunded", claim_id=str(claim.id), points=claim.points_requested)
        return

    try:
        await _set_state(
            claim,
            "TRANSFER_PENDING",
            needs_reconciliation=True,
            failure_code=error_code,
            failure_reason=reason[:500],
        )
    except PyMongoError as e:
        log.error("payout_flag_failed", claim_id=str(claim.id), error=str(e))
    log.critical(
        "payout_refund_failed",
        claim_id=str(claim.id),
        account_id=str(claim.account_id),
        points=claim.points_requested,
        error=str(last_error),
    )
    raise PayoutReconciliationError(str(claim.id))


async def _notify_underfunded(merchant: Merchant, claim: PayoutClaim, result: TransferResult) -> None:
    log.warning(
        "merchant_payout_wallet_underfunded",
        merchant_id=str(merchant.id),
        claim_id=str(claim.id),
        error=result.error_message,
    )
    await log_event(
        merchant.id,
        "payout_wallet_underfunded",
        "payout_claim",
        str(claim.id),
        {"payout_amount": claim.payout_amount, "currency": claim.currency},
        account_id=claim.account_id,
    )


def _claim_response(claim: PayoutClaim, balance: int | None, message: str) -> dict[str, Any]:
    return {
        "claim_id": str(claim.id),
        "status": claim.status,
        "state": claim.state,
        "transfer_ref": claim.transfer_ref,
        "points_redeemed": claim.points_requested if claim.status == "SUCCESS" else 0,
        "payout_amount": claim.payout_amount,
        "currency": claim.currency,
        "network": claim.network,
        "refunded": claim.refund_transaction_id is not None,
        "balance": balance,
        "message": message,
    }


async def _settle(merchant: Merchant, claim: PayoutClaim, gateway: TransferGateway) -> dict[str, Any]:
    settings = get_settings()
    await _set_state(claim, "TRANSFER_PENDING")
    request = TransferRequest(
        idempotency_key=str(claim.id),
        source_address=merchant.payout_wallet_address,
        destination_address=claim.destination_address,
        amount=claim.payout_amount,
        currency=claim.currency,
        network=claim.network,
    )
    try:
        result = await asyncio.wait_for(gateway.transfer(request), timeout=settings.transfer_timeout_seconds)
    except asyncio.TimeoutError:
        result = TransferResult(success=False, error_code="timeout", error_message="Transfer timed out")
    except TransferFailureError as e:
        result = TransferResult(success=False, error_code=e.code, error_message=e.message)
    except Exception as e:
        log.exception("transfer_gateway_error", claim_id=str(claim.id))
        result = TransferResult(success=False, error_code="gateway_error", error_message=str(e))

    if result.success:
        await _finalize(claim, "SUCCESS", "SUCCESS", transfer_ref=result.transfer_ref)
        log.info("payout_succeeded", claim_id=str(claim.id), transfer_ref=result.transfer_ref)
        await log_event(
            merchant.id,
            "payout_succeeded",
            "payout_claim",
            str(claim.id),
            {"points": claim.points_requested, "transfer_ref": result.transfer_ref},
            account_id=claim.account_id,
        )
        balance = await ledger_service.get_balance(claim.account_id)
        return _claim_response(claim, balance, "Payout sent")
    if result.pending:
        log.info("payout_transfer_pending", claim_id=str(claim.id))
        balance = await ledger_service.get_balance(claim.account_id)
        return _claim_response(claim, balance, "Payout submitted and awaiting confirmation")

    log.warning("payout_transfer_failed", claim_id=str(claim.id), error_code=result.error_code, error=result.error_message)
    await _refund(claim, result.error_message or "transfer failed", result.error_code)
    message = FAILED_MESSAGE
    if result.error_code == "insufficient_funds":
        await _notify_underfunded(merchant, claim, result)
        message = UNDER_VERIFICATION_MESSAGE
    balance = await ledger_service.get_balance(claim.account_id)
    return _claim_response(claim, balance, message)


async def _run_claim(
    redis,
    merchant: Merchant,
    email: str,
    milestone_id: str | None,
    gateway: TransferGateway,
) -> dict[str, Any]:
    settings = get_settings()
    member, account = await membership_service.resolve_existing(merchant, email)

    limit = await check_and_increment(
        redis, f"payout:{account.id}", settings.payout_rate_limit, settings.payout_rate_window_seconds
    )
    if not limit.allowed:
        raise RateLimitedError(limit.reset_in, "Too many payout attempts, try again later")

    milestone = _pick_milestone(merchant, milestone_id)
    error = _eligibility_error(merchant, account, milestone)
    if error is None:
        error = await _cooldown_error(merchant, account)
    if error is not None:
        log.info("payout_not_eligible", account_id=str(account.id), reason=error.reason)
        raise error

    claim = PayoutClaim(
        account_id=account.id,
        merchant_id=merchant.id,
        member_id=member.id,
        milestone_id=milestone.id,
        points_requested=milestone.points_required,
        payout_amount=milestone.payout_amount,
        currency=merchant.payout_currency,
        network=merchant.payout_network,
        destination_address=account.wallet_address,
    )
    await claim.insert()
    log.info("payout_claim_created", claim_id=str(claim.id), account_id=str(account.id), points=claim.points_requested)

    try:
        reserve = await ledger_service.apply_delta(
            account.id,
            -claim.points_requested,
            "PAYOUT",
            f"Payout {claim.payout_amount} {claim.currency}",
            idempotency_key=f"payout:{claim.id}",
            linked_external_ref=str(claim.id),
        )
    except InsufficientBalanceError as e:
        await _finalize(claim, "FAILED", "REJECTED", failure_code="INSUFFICIENT_POINTS", failure_reason=e.message)
        raise NotEligibleError(
            "INSUFFICIENT_POINTS",
            "Not enough points for this payout",
            details={"current_points": e.balance, "points_required": claim.points_requested},
        ) from e
    except StorageTransientError:
        return await _resolve_unknown_reserve(claim)
    await _set_state(claim, "RESERVED", reserve_transaction_id=reserve.transaction_id)
    return await _settle(merchant, claim, gateway)


async def _resolve_unknown_reserve(claim: PayoutClaim) -> dict[str, Any]:
    """
    The reserve write may have landed even though storage reported a failure.
    Refund it if it exists; close the claim if it does not. When even the lookup
    fails the claim stays PENDING for reconcile_claim.
    """
    try:
        reserved = await ledger_service.find_by_key(claim.account_id, f"payout:{claim.id}")
    except (StorageTransientError, PyMongoError) as e:
        log.error("payout_reserve_unknown", claim_id=str(claim.id), error=str(e))
        try:
            await _set_state(claim, claim.state, needs_reconciliation=True, failure_code="STORAGE_UNAVAILABLE")
        except PyMongoError:
            log.error("payout_flag_failed", claim_id=str(claim.id))
        raise PayoutReconciliationError(str(claim.id)) from e
    if reserved is None:
        await _finalize(claim, "FAILED", "REJECTED", failure_code="STORAGE_UNAVAILABLE")
        raise StorageTransientError()
    log.warning("payout_reserve_ack_lost", claim_id=str(claim.id))
    await _set_state(claim, "RESERVED", reserve_transaction_id=reserved.transaction_id)
    await _refund(claim, "reservation outcome was not acknowledged", "STORAGE_UNAVAILABLE")
    balance = await ledger_service.get_balance(claim.account_id)
    return _claim_response(claim, balance, FAILED_MESSAGE)


async def claim_payout(
    redis,
    merchant: Merchant,
    email: str,
    milestone_id: str | None = None,
    gateway: TransferGateway | None = None,
) -> dict[str, Any]:
    """
    Execute a payout claim end to end. The work runs in its own task shielded
    from caller cancellation, so a client disconnect cannot strand a reservation.
    """
    task = asyncio.ensure_future(_run_claim(redis, merchant, email, milestone_id, gateway or get_transfer_gateway()))
    return await asyncio.shield(task)


async def reconcile_claim(claim_id: PydanticObjectId, gateway: TransferGateway | None = None) -> dict[str, Any]:
    """Drive a non-terminal claim to a terminal state using the gateway's view of the transfer."""
    claim = await PayoutClaim.get(claim_id)
    if not claim:
        raise NotFoundError("Payout claim not found")
    if claim.status != "PENDING":
        return _claim_response(claim, None, "Already settled")
    gateway = gateway or get_transfer_gateway()

    reserved = await ledger_service.find_by_key(claim.account_id, f"payout:{claim.id}")
    if reserved is None:
        await _finalize(claim, "FAILED", "REJECTED", failure_code="NOT_RESERVED", failure_reason="No reservation recorded")
        return _claim_response(claim, None, "Claim closed without reservation")

    # RESERVED means the gateway was never called
    status = TransferResult(success=False, error_code="not_found")
    if claim.state == "TRANSFER_PENDING":
        status = await gateway.get_status(str(claim.id))

    if status.success:
        await _finalize(claim, "SUCCESS", "SUCCESS", transfer_ref=status.transfer_ref, needs_reconciliation=False)
        log.info("payout_reconciled", claim_id=str(claim.id), outcome="SUCCESS")
        return _claim_response(claim, None, "Payout confirmed")
    if status.pending:
        return _claim_response(claim, None, "Transfer still pending")

    await _refund(claim, status.error_message or "transfer not completed", status.error_code or "reconciled")
    log.info("payout_reconciled", claim_id=str(claim.id), outcome="FAILED")
    return _claim_response(claim, None, FAILED_MESSAGE)


async def list_claims(
    merchant_id: PydanticObjectId | None = None,
    needs_attention: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[PayoutClaim], int]:
    filters: dict[str, Any] = {}
    if merchant_id is not None:
        filters["merchant_id"] = merchant_id
    if needs_attention:
        filters["status"] = "PENDING"
    query = PayoutClaim.find(filters)
    total = await query.count()
    items = await query.sort(-PayoutClaim.created_at).skip(offset).limit(limit).to_list()
    return items, total


async def stuck_claims(older_than_seconds: int, limit: int = 50) -> list[PayoutClaim]:
    cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
    return await PayoutClaim.find(
        PayoutClaim.status == "PENDING",
        PayoutClaim.updated_at <= cutoff,
    ).limit(limit).to_list()
