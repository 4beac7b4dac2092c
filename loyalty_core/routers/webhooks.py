import orjson
from fastapi import APIRouter, Request

from loyalty_core.adapters.registry import get_adapter
from loyalty_core.core.exceptions import BadRequestError, InvalidSignatureError
from loyalty_core.core.logging import bind_context, get_logger
from loyalty_core.services import settlement as settlement_service

router = APIRouter()
log = get_logger(__name__)


@router.post("/{provider}")
async def provider_webhook(provider: str, request: Request):
    """Verify, normalize and ingest a provider notification. Always 200 once authenticated."""
    adapter = get_adapter(provider)
    raw = await request.body()
    try:
        payload = orjson.loads(raw) if raw else {}
    except orjson.JSONDecodeError as e:
        raise BadRequestError("Invalid JSON body") from e
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid JSON body")

    merchant = await settlement_service.find_merchant_by_provider(adapter.channel, adapter.account_ref(payload, request.headers))
    if not adapter.verify(raw, request.headers, adapter.secret_for(merchant)):
        log.warning("webhook_signature_invalid", provider=adapter.channel)
        raise InvalidSignatureError()
    if merchant is None:
        log.info("webhook_unknown_account", provider=adapter.channel)
        return {"received": True, "processed": False, "reason": "merchant_not_found"}
    bind_context(merchant_id=str(merchant.id), channel=adapter.channel)
    if not merchant.enabled:
        return {"received": True, "processed": False, "reason": "merchant_disabled"}

    items = adapter.normalize(payload, request.headers, merchant)
    if not items:
        return {"received": True, "processed": False, "reason": "event_not_handled"}
    results = []
    for item in items:
        r = await settlement_service.ingest(
            merchant, item, source_channel="webhook", external_source=adapter.channel
        )
        results.append(
            {
                "external_id": item.external_id,
                "kind": item.kind,
                "duplicate": r.duplicate,
                "skipped": r.skipped,
                "reason": r.skip_reason,
                "points": r.points,
            }
        )
    return {"received": True, "processed": True, "results": results}
