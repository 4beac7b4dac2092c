from datetime import datetime, timedelta

import pytest

from conftest import FakeRedis
from loyalty_core.core.exceptions import ForbiddenError, RateLimitedError, UnauthorizedError
from loyalty_core.models.api_key import ApiKey
from loyalty_core.services import api_keys as api_keys_service

pytestmark = pytest.mark.asyncio


async def test_raw_key_is_not_stored(merchant):
    key, raw = await api_keys_service.create_api_key(merchant.id, "pos")
    assert raw.startswith("lk_live_")
    stored = await ApiKey.get(key.id)
    assert stored.key_hash != raw
    assert raw.startswith(stored.key_prefix)


async def test_authenticate_checks_permission_and_updates_last_used(merchant):
    key, raw = await api_keys_service.create_api_key(merchant.id, "pos", permissions=["write:orders"])
    found = await api_keys_service.authenticate(FakeRedis(), f"Bearer {raw}", "write:orders")
    assert found.id == key.id
    assert (await ApiKey.get(key.id)).last_used_at is not None
    with pytest.raises(ForbiddenError):
        await api_keys_service.authenticate(FakeRedis(), f"Bearer {raw}", "admin:payouts")


async def test_revoked_and_expired_keys_fail(merchant):
    key, raw = await api_keys_service.create_api_key(merchant.id, "old")
    await api_keys_service.revoke_api_key(key.id, merchant.id)
    with pytest.raises(UnauthorizedError):
        await api_keys_service.authenticate(FakeRedis(), f"Bearer {raw}", "read:orders")

    _, raw = await api_keys_service.create_api_key(
        merchant.id, "expired", expires_at=datetime.utcnow() - timedelta(minutes=1)
    )
    with pytest.raises(UnauthorizedError):
        await api_keys_service.authenticate(FakeRedis(), f"Bearer {raw}", "read:orders")


async def test_per_key_hourly_limit(merchant):
    _, raw = await api_keys_service.create_api_key(merchant.id, "tiny", rate_limit=2)
    redis = FakeRedis()
    for _ in range(2):
        await api_keys_service.authenticate(redis, f"Bearer {raw}", "read:orders")
    with pytest.raises(RateLimitedError):
        await api_keys_service.authenticate(redis, f"Bearer {raw}", "read:orders")
