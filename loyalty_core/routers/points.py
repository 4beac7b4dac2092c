from datetime import date

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from loyalty_core.deps import get_api_merchant, require_api_key
from loyalty_core.models.api_key import ApiKey
from loyalty_core.services import points as points_service

router = APIRouter()


class RedeemRequest(BaseModel):
    email: str
    points: int = Field(gt=0)
    reward: str = Field(min_length=1, max_length=200)


class AdjustRequest(BaseModel):
    email: str
    amount: int
    reason: str = Field(min_length=1, max_length=500)


class MemberRequest(BaseModel):
    email: str


class AnniversaryDateRequest(BaseModel):
    email: str
    anniversary_date: date


@router.get("")
async def points_summary(
    email: str = Query(...),
    key: ApiKey = Depends(require_api_key("read:points")),
):
    """Balance and recent ledger entries for a member."""
    merchant = await get_api_merchant(key)
    return await points_service.get_summary(merchant, email)


@router.post("/redeem")
async def points_redeem(
    body: RedeemRequest,
    key: ApiKey = Depends(require_api_key("write:points")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    merchant = await get_api_merchant(key)
    result = await points_service.redeem(merchant, body.email, body.points, body.reward, idempotency_key)
    return {"transaction_id": str(result.transaction_id), "points": result.amount, "balance": result.balance_after, "duplicate": result.duplicate}


@router.post("/adjust")
async def points_adjust(
    body: AdjustRequest,
    key: ApiKey = Depends(require_api_key("write:points")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    merchant = await get_api_merchant(key)
    result = await points_service.adjust(merchant, body.email, body.amount, body.reason, idempotency_key)
    return {"transaction_id": str(result.transaction_id), "points": result.amount, "balance": result.balance_after, "duplicate": result.duplicate}


@router.post("/birthday")
async def points_birthday(body: MemberRequest, key: ApiKey = Depends(require_api_key("write:points"))):
    merchant = await get_api_merchant(key)
    result = await points_service.claim_birthday(merchant, body.email)
    return {"transaction_id": str(result.transaction_id), "points": result.amount, "balance": result.balance_after}


@router.post("/anniversary")
async def points_anniversary(body: MemberRequest, key: ApiKey = Depends(require_api_key("write:points"))):
    merchant = await get_api_merchant(key)
    result = await points_service.claim_anniversary(merchant, body.email)
    return {"transaction_id": str(result.transaction_id), "points": result.amount, "balance": result.balance_after}


@router.post("/member-anniversary")
async def points_member_anniversary(body: MemberRequest, key: ApiKey = Depends(require_api_key("write:points"))):
    merchant = await get_api_merchant(key)
    result = await points_service.claim_member_anniversary(merchant, body.email)
    return {"transaction_id": str(result.transaction_id), "points": result.amount, "balance": result.balance_after}


@router.put("/anniversary-date")
async def points_anniversary_date(body: AnniversaryDateRequest, key: ApiKey = Depends(require_api_key("write:points"))):
    """Set the date used for anniversary rewards; defaults to the join date."""
    merchant = await get_api_merchant(key)
    member = await points_service.set_anniversary_date(merchant, body.email, body.anniversary_date)
    return {"anniversary_date": member.anniversary_date.date().isoformat()}
