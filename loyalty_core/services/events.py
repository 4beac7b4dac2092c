"""Idempotent event recorder: one SettlementEvent per uniqueness key."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from loyalty_core.core.config import get_settings
from loyalty_core.core.logging import get_logger
from loyalty_core.core.retry import with_storage_retry
from loyalty_core.models.merchant import Merchant
from loyalty_core.models.settlement_event import SettlementEvent

log = get_logger(__name__)


@dataclass
class RecordResult:
    accepted: bool
    event: SettlementEvent


def idempotency_scope(
    merchant_id: PydanticObjectId,
    external_source: str,
    external_id: str,
    idempotency_key: str | None = None,
) -> str:
    """A caller-provided key wins; otherwise the natural key stands in for it."""
    if idempotency_key:
        return f"key:{merchant_id}:{idempotency_key}"
    return f"ext:{merchant_id}:{external_source}:{external_id}"


async def _find_original(merchant_id: PydanticObjectId, external_source: str, external_id: str, scope: str) -> SettlementEvent | None:
    existing = await SettlementEvent.find_one(
        SettlementEvent.merchant_id == merchant_id,
        SettlementEvent.external_source == external_source,
        SettlementEvent.external_id == external_id,
    )
    if existing:
        return existing
    return await SettlementEvent.find_one(SettlementEvent.idempotency_scope == scope)


async def record(
    merchant: Merchant,
    *,
    source_channel: str,
    external_source: str,
    external_id: str,
    kind: str = "CHARGE",
    customer_email: str | None = None,
    amount_minor: int = 0,
    currency: str = "USD",
    occurred_at: datetime | None = None,
    refund_of: str | None = None,
    points_rate: float = 0.0,
    points_awarded: int = 0,
    idempotency_key: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> RecordResult:
    """
    Insert the event. A uniqueness violation means it was already recorded:
    return accepted=False with the original so the caller can answer "duplicate".
    """
    scope = idempotency_scope(merchant.id, external_source, external_id, idempotency_key)
    event = SettlementEvent(
        merchant_id=merchant.id,
        source_channel=source_channel,
        external_source=external_source,
        external_id=external_id,
        idempotency_scope=scope,
        customer_email=customer_email,
        amount_minor=amount_minor,
        currency=(currency or "USD").upper(),
        occurred_at=occurred_at or datetime.utcnow(),
        kind=kind,
        refund_of=refund_of,
        points_rate=points_rate,
        points_awarded=points_awarded,
        metadata=metadata or {},
    )
    settings = get_settings()
    try:
        await with_storage_retry(
            event.insert,
            "event_insert",
            attempts=settings.storage_retry_attempts,
            base_delay=settings.storage_retry_base_delay,
        )
    except DuplicateKeyError:
        original = await _find_original(merchant.id, external_source, external_id, scope)
        if original is None:
            raise
        log.info(
            "event_duplicate",
            merchant_id=str(merchant.id),
            external_source=external_source,
            external_id=external_id,
        )
        return RecordResult(accepted=False, event=original)
    log.info(
        "event_recorded",
        event_id=str(event.id),
        merchant_id=str(merchant.id),
        external_source=external_source,
        external_id=external_id,
        kind=kind,
    )
    return RecordResult(accepted=True, event=event)


async def mark_processed(
    event: SettlementEvent,
    member_id: PydanticObjectId,
    account_id: PydanticObjectId,
    ledger_transaction_id: PydanticObjectId | None,
    status: str = "processed",
) -> None:
    now = datetime.utcnow()
    await SettlementEvent.find_one({"_id": event.id}).update(
        {
            "$set": {
                "status": status,
                "member_id": member_id,
                "account_id": account_id,
                "ledger_transaction_id": ledger_transaction_id,
                "processed_at": now,
            }
        }
    )
    event.status = status
    event.member_id = member_id
    event.account_id = account_id
    event.ledger_transaction_id = ledger_transaction_id
    event.processed_at = now


async def mark_skipped(event: SettlementEvent, reason: str) -> None:
    await SettlementEvent.find_one({"_id": event.id}).update(
        {"$set": {"status": "skipped", "skip_reason": reason, "processed_at": datetime.utcnow()}}
    )
    event.status = "skipped"
    event.skip_reason = reason
    log.info("event_skipped", event_id=str(event.id), reason=reason)


async def find_charge(merchant_id: PydanticObjectId, external_source: str, external_id: str) -> SettlementEvent | None:
    return await SettlementEvent.find_one(
        SettlementEvent.merchant_id == merchant_id,
        SettlementEvent.external_source == external_source,
        SettlementEvent.external_id == external_id,
        SettlementEvent.kind == "CHARGE",
    )


async def add_refunded_points(charge: SettlementEvent, points: int) -> None:
    await SettlementEvent.find_one({"_id": charge.id}).update({"$inc": {"points_refunded": points}})
    charge.points_refunded += points


async def list_events(merchant_id: PydanticObjectId, limit: int, offset: int, external_source: str | None = None) -> tuple[list[SettlementEvent], int]:
    query = SettlementEvent.find(SettlementEvent.merchant_id == merchant_id)
    if external_source:
        query = SettlementEvent.find(
            SettlementEvent.merchant_id == merchant_id,
            SettlementEvent.external_source == external_source,
        )
    total = await query.count()
    items = await query.sort(-SettlementEvent.created_at).skip(offset).limit(limit).to_list()
    return items, total
