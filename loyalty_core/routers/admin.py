from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from loyalty_core.core.exceptions import BadRequestError, NotFoundError
from loyalty_core.core.pagination import page, paginate
from loyalty_core.deps import get_api_merchant, require_api_key
from loyalty_core.models.api_key import ApiKey
from loyalty_core.models.payout_claim import PayoutClaim
from loyalty_core.services import merchants as merchants_service
from loyalty_core.services import payouts as payouts_service

router = APIRouter()


@router.get("/payouts/reconciliation")
async def payouts_needing_attention(
    key: ApiKey = Depends(require_api_key("admin:payouts")),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Non-terminal payout claims of the key's merchant, newest first."""
    limit, offset = paginate(limit, offset)
    items, total = await payouts_service.list_claims(key.merchant_id, needs_attention=True, limit=limit, offset=offset)
    out = [
        {
            "id": str(c.id),
            "state": c.state,
            "points": c.points_requested,
            "payout_amount": c.payout_amount,
            "needs_reconciliation": c.needs_reconciliation,
            "failure_reason": c.failure_reason,
            "updated_at": c.updated_at.isoformat(),
        }
        for c in items
    ]
    return page(out, limit, offset, total)


@router.post("/payouts/{claim_id}/reconcile")
async def reconcile_payout(claim_id: str, key: ApiKey = Depends(require_api_key("admin:payouts"))):
    """Settle a stuck claim now instead of waiting for the worker."""
    try:
        oid = PydanticObjectId(claim_id)
    except (InvalidId, TypeError):
        raise NotFoundError("Payout claim not found")
    claim = await PayoutClaim.get(oid)
    if not claim or claim.merchant_id != key.merchant_id:
        raise NotFoundError("Payout claim not found")
    return await payouts_service.reconcile_claim(claim.id)


class ProviderSettingsRequest(BaseModel):
    account_ref: str | None = None
    webhook_secret: str | None = None


@router.put("/providers/{channel}")
async def update_provider_settings(
    channel: str,
    body: ProviderSettingsRequest,
    key: ApiKey = Depends(require_api_key("admin:settings")),
):
    """Link a provider account and/or store its webhook signing secret (never returned)."""
    merchant = await get_api_merchant(key)
    if body.account_ref is None and body.webhook_secret is None:
        raise BadRequestError("Nothing to update")
    if body.account_ref is not None:
        await merchants_service.set_provider_account(merchant, channel, body.account_ref)
    if body.webhook_secret is not None:
        await merchants_service.set_webhook_secret(merchant, channel, body.webhook_secret)
    return {
        "channel": channel,
        "account_ref": merchant.provider_accounts.get(channel),
        "has_webhook_secret": channel in merchant.webhook_secrets,
    }
