import pytest

from conftest import BrokenRedis
from loyalty_core.services.rate_limit import check_and_increment

pytestmark = pytest.mark.asyncio


async def test_blocks_after_limit(redis):
    results = [await check_and_increment(redis, "payout:acc1", 3, 600) for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert 0 < results[-1].reset_in <= 600
    # expiry set once, on the first hit of the window
    assert list(redis.ttls.values()) == [600]


async def test_keys_are_independent(redis):
    for _ in range(3):
        await check_and_increment(redis, "payout:acc1", 3, 600)
    other = await check_and_increment(redis, "payout:acc2", 3, 600)
    assert other.allowed


async def test_fails_open_when_redis_errors():
    result = await check_and_increment(BrokenRedis(), "payout:acc1", 1, 600)
    assert result.allowed
    assert result.remaining == 1


async def test_fails_open_without_redis():
    result = await check_and_increment(None, "scan:x", 1, 60)
    assert result.allowed
