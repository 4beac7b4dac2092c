from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from loyalty_core.core.logging import bind_context
from loyalty_core.deps import get_redis, merchant_from_slug, require_merchant_key
from loyalty_core.models.merchant import Merchant
from loyalty_core.services import payouts as payouts_service

router = APIRouter()


class ClaimRequest(BaseModel):
    email: str
    milestone_id: str | None = None


class WalletRequest(BaseModel):
    email: str
    wallet_address: str


@router.get("/{slug}/eligibility")
async def payout_eligibility(
    email: str = Query(...),
    milestone_id: str | None = Query(None),
    merchant: Merchant = Depends(merchant_from_slug),
):
    return await payouts_service.get_eligibility(merchant, email, milestone_id)


@router.post("/{slug}/claim")
async def payout_claim(
    body: ClaimRequest,
    merchant: Merchant = Depends(merchant_from_slug),
    redis=Depends(get_redis),
):
    """Run the payout state machine; returns the terminal outcome."""
    bind_context(merchant_id=str(merchant.id), channel="payout")
    return await payouts_service.claim_payout(redis, merchant, body.email, body.milestone_id)


@router.put("/{slug}/wallet")
async def payout_wallet(body: WalletRequest, merchant: Merchant = Depends(require_merchant_key("write:wallets"))):
    """
    Change where a member's payouts are sent. Requires the merchant's API key with
    write:wallets; member sign-in happens in the merchant's app before this call.
    """
    account = await payouts_service.set_wallet_address(merchant, body.email, body.wallet_address)
    return {"wallet_address": account.wallet_address}
