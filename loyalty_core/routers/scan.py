from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from loyalty_core.adapters.scan import read_location_token, visit_event
from loyalty_core.core.config import get_settings
from loyalty_core.core.exceptions import RateLimitedError
from loyalty_core.core.logging import bind_context
from loyalty_core.deps import get_redis
from loyalty_core.services import settlement as settlement_service
from loyalty_core.services.membership import normalize_email
from loyalty_core.services.rate_limit import check_and_increment

router = APIRouter()


class ScanRequest(BaseModel):
    token: str
    email: str
    first_name: str = ""
    last_name: str = ""


@router.post("")
async def scan_visit(body: ScanRequest, request: Request, redis=Depends(get_redis)):
    """In-store QR scan; one visit per member, location and day."""
    settings = get_settings()
    slug, location_id = read_location_token(body.token)
    email = normalize_email(body.email)
    merchant = await settlement_service.get_merchant_by_slug(slug)
    bind_context(merchant_id=str(merchant.id), channel="scan")
    limit = await check_and_increment(
        redis, f"scan:{merchant.id}:{email}", settings.scan_rate_limit, settings.scan_rate_window_seconds
    )
    if not limit.allowed:
        raise RateLimitedError(limit.reset_in)
    item = visit_event(merchant, location_id, email)
    item.first_name = body.first_name
    item.last_name = body.last_name
    result = await settlement_service.ingest(merchant, item, source_channel="scan", external_source="scan")
    if result.duplicate:
        message = "Already checked in today"
    else:
        message = f"Earned {result.points} points"
    return {
        "success": not result.duplicate,
        "duplicate": result.duplicate,
        "points_awarded": 0 if result.duplicate else result.points,
        "welcome_points": result.welcome_points,
        "new_member": result.new_member,
        "total_points": result.balance,
        "merchant": merchant.name,
        "message": message,
    }
