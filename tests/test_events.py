import pytest

from loyalty_core.models.settlement_event import SettlementEvent
from loyalty_core.services import events as events_service

pytestmark = pytest.mark.asyncio


async def test_second_record_is_duplicate(merchant):
    first = await events_service.record(
        merchant, source_channel="webhook", external_source="square", external_id="pay-1", amount_minor=1000, points_awarded=15
    )
    second = await events_service.record(
        merchant, source_channel="webhook", external_source="square", external_id="pay-1", amount_minor=1000, points_awarded=15
    )
    assert first.accepted
    assert not second.accepted
    assert second.event.id == first.event.id
    assert second.event.points_awarded == 15
    assert await SettlementEvent.find(SettlementEvent.external_id == "pay-1").count() == 1


async def test_caller_idempotency_key_dedupes_across_external_ids(merchant):
    a = await events_service.record(
        merchant, source_channel="api", external_source="api", external_id="A-1", idempotency_key="retry-7"
    )
    b = await events_service.record(
        merchant, source_channel="api", external_source="api", external_id="A-1-retry", idempotency_key="retry-7"
    )
    assert a.accepted
    assert not b.accepted
    assert b.event.id == a.event.id


async def test_same_external_id_different_source_or_merchant(merchant):
    from loyalty_core.models.merchant import Merchant
    other = Merchant(slug="other", name="Other")
    await other.insert()
    results = [
        await events_service.record(merchant, source_channel="webhook", external_source="square", external_id="X"),
        await events_service.record(merchant, source_channel="webhook", external_source="clover", external_id="X"),
        await events_service.record(other, source_channel="webhook", external_source="square", external_id="X"),
    ]
    assert all(r.accepted for r in results)
