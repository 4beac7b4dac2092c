"""Audit trail for payout outcomes and merchant wallet alerts."""

from typing import Any

from beanie import PydanticObjectId

from loyalty_core.core.logging import get_logger
from loyalty_core.models.audit_log import AuditLog

log = get_logger(__name__)


async def log_event(
    merchant_id: PydanticObjectId | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    account_id: PydanticObjectId | None = None,
) -> AuditLog:
    entry = AuditLog(
        merchant_id=merchant_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        account_id=account_id,
        metadata=metadata or {},
    )
    await entry.insert()
    log.debug("audit_recorded", event_type=event_type, entity_id=entity_id)
    return entry
