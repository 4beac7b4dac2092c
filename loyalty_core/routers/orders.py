from fastapi import APIRouter, Depends, Header, Query

from loyalty_core.adapters.api_orders import OrderSubmission, order_event
from loyalty_core.core.logging import bind_context
from loyalty_core.core.pagination import page, paginate
from loyalty_core.deps import get_api_merchant, require_api_key
from loyalty_core.models.api_key import ApiKey
from loyalty_core.services import events as events_service
from loyalty_core.services import settlement as settlement_service
from loyalty_core.services.membership import normalize_email

router = APIRouter()


@router.post("")
async def submit_order(
    body: OrderSubmission,
    key: ApiKey = Depends(require_api_key("write:orders")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """Record an order and award points once per (source, external_id)."""
    merchant = await get_api_merchant(key)
    bind_context(merchant_id=str(merchant.id), channel="api")
    body.customer_email = normalize_email(body.customer_email)
    result = await settlement_service.ingest(
        merchant,
        order_event(body),
        source_channel="api",
        external_source=body.source.strip().lower(),
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    if result.duplicate:
        message = "Order already processed"
    elif result.new_member:
        message = f"Welcome! Created new member and awarded {result.points} points"
    else:
        message = f"Awarded {result.points} points"
    return {
        "success": True,
        "order_id": str(result.event.id),
        "member_id": str(result.member_id) if result.member_id else None,
        "points_awarded": result.points,
        "welcome_points": result.welcome_points,
        "duplicate": result.duplicate,
        "new_member": result.new_member,
        "total_points": result.balance,
        "message": message,
    }


@router.get("")
async def list_orders(
    key: ApiKey = Depends(require_api_key("read:orders")),
    source: str | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Orders and webhook events recorded for the key's merchant (newest first)."""
    merchant = await get_api_merchant(key)
    limit, offset = paginate(limit, offset, max_limit=100)
    items, total = await events_service.list_events(merchant.id, limit, offset, external_source=source)
    out = [
        {
            "id": str(e.id),
            "external_id": e.external_id,
            "source": e.external_source,
            "kind": e.kind,
            "customer_email": e.customer_email,
            "amount": e.amount_minor,
            "currency": e.currency,
            "points_awarded": e.points_awarded,
            "status": e.status,
            "occurred_at": e.occurred_at.isoformat(),
        }
        for e in items
    ]
    return page(out, limit, offset, total)
