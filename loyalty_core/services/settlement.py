"""Ingestion: normalized event -> recorder -> membership resolver -> ledger."""

from dataclasses import dataclass

from beanie import PydanticObjectId

from loyalty_core.adapters.base import NormalizedEvent
from loyalty_core.core.exceptions import BadRequestError, NotFoundError
from loyalty_core.core.logging import get_logger
from loyalty_core.models.membership_account import MembershipAccount
from loyalty_core.models.merchant import Merchant
from loyalty_core.models.settlement_event import SettlementEvent
from loyalty_core.services import events as events_service
from loyalty_core.services import ledger as ledger_service
from loyalty_core.services import membership as membership_service

log = get_logger(__name__)


@dataclass
class IngestResult:
    event: SettlementEvent
    duplicate: bool = False
    skipped: bool = False
    skip_reason: str | None = None
    points: int = 0
    new_member: bool = False
    welcome_points: int = 0
    member_id: PydanticObjectId | None = None
    account_id: PydanticObjectId | None = None
    balance: int | None = None


def ledger_key(event: SettlementEvent) -> str:
    """Ledger idempotency key of the delta an event produces."""
    return f"event:{event.id}"


async def find_merchant_by_provider(channel: str, account_ref: str | None) -> Merchant | None:
    if not account_ref:
        return None
    return await Merchant.find_one({f"provider_accounts.{channel}": account_ref})


async def get_merchant_by_slug(slug: str) -> Merchant:
    merchant = await Merchant.find_one(Merchant.slug == slug)
    if not merchant:
        raise NotFoundError("Merchant not found")
    return merchant


async def _refund_target(merchant: Merchant, external_source: str, item: NormalizedEvent) -> tuple[SettlementEvent | None, int]:
    """(original charge, points to deduct) for a refund event."""
    if not item.refund_of:
        return None, 0
    charge = await events_service.find_charge(merchant.id, external_source, item.refund_of)
    if charge is None:
        return None, 0
    rate = charge.points_rate or merchant.points_per_currency_unit
    wanted = ledger_service.points_for_amount(item.amount_minor, rate, item.currency)
    remaining = max(0, charge.points_awarded - charge.points_refunded)
    return charge, min(wanted, remaining)


async def ingest(
    merchant: Merchant,
    item: NormalizedEvent,
    *,
    source_channel: str,
    external_source: str,
    idempotency_key: str | None = None,
) -> IngestResult:
    """Record the event exactly once, then apply its points. Duplicates return the original outcome."""
    rate = merchant.points_per_currency_unit
    if item.kind == "REFUND":
        _, points = await _refund_target(merchant, external_source, item)
        points = -points
    elif item.fixed_points is not None:
        points = item.fixed_points
        rate = 0.0
    else:
        points = ledger_service.points_for_amount(item.amount_minor, rate, item.currency)

    metadata = dict(item.metadata)
    if item.first_name or item.last_name:
        metadata["customer_name"] = {"first": item.first_name, "last": item.last_name}
    recorded = await events_service.record(
        merchant,
        source_channel=source_channel,
        external_source=external_source,
        external_id=item.external_id,
        kind=item.kind,
        customer_email=(item.customer_email or "").strip().lower() or None,
        amount_minor=item.amount_minor,
        currency=item.currency,
        occurred_at=item.occurred_at,
        refund_of=item.refund_of,
        points_rate=rate,
        points_awarded=points,
        idempotency_key=idempotency_key,
        metadata=metadata,
    )
    if not recorded.accepted:
        if recorded.event.status == "recorded":
            # recorded by an earlier attempt that failed before applying; finish it now
            result = await apply_event(merchant, recorded.event)
            result.duplicate = True
            return result
        return await _duplicate_result(recorded.event)
    return await apply_event(merchant, recorded.event)


async def _duplicate_result(event: SettlementEvent) -> IngestResult:
    balance = None
    if event.account_id:
        account = await MembershipAccount.get(event.account_id)
        balance = account.points if account else None
    return IngestResult(
        event=event,
        duplicate=True,
        skipped=event.status == "skipped",
        skip_reason=event.skip_reason,
        points=event.points_awarded,
        member_id=event.member_id,
        account_id=event.account_id,
        balance=balance,
    )


async def apply_event(merchant: Merchant, event: SettlementEvent) -> IngestResult:
    """Apply a recorded event's points. Safe to repeat: the ledger delta is keyed by the event id."""
    if event.kind == "REFUND":
        return await _apply_refund(merchant, event)
    return await _apply_charge(merchant, event)


async def _apply_charge(merchant: Merchant, event: SettlementEvent) -> IngestResult:
    if not event.customer_email:
        await events_service.mark_skipped(event, "no_customer_email")
        return IngestResult(event=event, skipped=True, skip_reason="no_customer_email")
    name = event.metadata.get("customer_name") or {}
    try:
        resolution = await membership_service.resolve(
            merchant, event.customer_email, name.get("first", ""), name.get("last", "")
        )
    except BadRequestError:
        await events_service.mark_skipped(event, "invalid_customer_email")
        return IngestResult(event=event, skipped=True, skip_reason="invalid_customer_email")

    account = resolution.account
    tx_id = None
    balance = account.points
    if event.points_awarded > 0:
        result = await ledger_service.apply_delta(
            account.id,
            event.points_awarded,
            "EARN",
            _earn_reason(event),
            idempotency_key=ledger_key(event),
            linked_external_ref=event.external_id,
        )
        tx_id = result.transaction_id
        balance = result.balance_after
    await events_service.mark_processed(event, resolution.member.id, account.id, tx_id)
    log.info(
        "event_processed",
        event_id=str(event.id),
        merchant_id=str(merchant.id),
        points=event.points_awarded,
        new_member=resolution.new_member,
    )
    return IngestResult(
        event=event,
        points=event.points_awarded,
        new_member=resolution.new_member,
        welcome_points=resolution.welcome_points,
        member_id=resolution.member.id,
        account_id=account.id,
        balance=balance,
    )


async def _apply_refund(merchant: Merchant, event: SettlementEvent) -> IngestResult:
    charge = None
    if event.refund_of:
        charge = await events_service.find_charge(merchant.id, event.external_source, event.refund_of)
    if charge is None or charge.account_id is None:
        reason = "charge_not_found" if charge is None else "charge_not_processed"
        await events_service.mark_skipped(event, reason)
        return IngestResult(event=event, skipped=True, skip_reason=reason)

    wanted = -event.points_awarded
    result, shortfall = await ledger_service.apply_clamped_debit(
        charge.account_id,
        wanted,
        "ADJUST",
        f"Refund of {event.external_source} {event.refund_of}",
        idempotency_key=ledger_key(event),
        linked_external_ref=event.external_id,
    )
    if result is not None and not result.duplicate:
        await events_service.add_refunded_points(charge, wanted)
        if shortfall > 0:
            await _record_shortfall(merchant, event, charge.account_id, shortfall)
    await events_service.mark_processed(
        event,
        charge.member_id,
        charge.account_id,
        result.transaction_id if result else None,
        status="refunded",
    )
    balance = result.balance_after if result else await ledger_service.get_balance(charge.account_id)
    return IngestResult(
        event=event,
        points=result.amount if result else 0,
        member_id=charge.member_id,
        account_id=charge.account_id,
        balance=balance,
    )


async def _record_shortfall(merchant: Merchant, event: SettlementEvent, account_id: PydanticObjectId, shortfall: int) -> None:
    await SettlementEvent.find_one({"_id": event.id}).update({"$set": {"refund_shortfall": shortfall}})
    event.refund_shortfall = shortfall
    if merchant.refund_shortfall_policy == "track":
        await MembershipAccount.find_one({"_id": account_id}).update({"$inc": {"refund_shortfall_points": shortfall}})
    log.warning(
        "refund_shortfall",
        merchant_id=str(merchant.id),
        account_id=str(account_id),
        shortfall=shortfall,
        policy=merchant.refund_shortfall_policy,
    )


def _earn_reason(event: SettlementEvent) -> str:
    if event.source_channel == "scan":
        return "Visit"
    amount = event.amount_minor / (10 ** ledger_service.currency_exponent(event.currency))
    return f"{event.external_source} order {event.external_id} ({amount:.2f} {event.currency})"


async def replay_unapplied(older_than_seconds: int, limit: int = 100) -> int:
    """Apply events a crash left in `recorded`. Returns how many were applied."""
    from datetime import datetime, timedelta
    cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
    stale = await SettlementEvent.find(
        SettlementEvent.status == "recorded",
        SettlementEvent.created_at <= cutoff,
    ).limit(limit).to_list()
    applied = 0
    for event in stale:
        merchant = await Merchant.get(event.merchant_id)
        if not merchant:
            continue
        await apply_event(merchant, event)
        applied += 1
    if applied:
        log.info("events_replayed", count=applied)
    return applied
