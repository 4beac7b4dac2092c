import os
from typing import AsyncGenerator

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "loyalty_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("QR_SECRET", "test-qr-secret")
os.environ.setdefault("SQUARE_WEBHOOK_SIGNATURE_KEY", "square-test-key")
os.environ.setdefault("SQUARE_WEBHOOK_URL", "https://loyalty.test/v1/webhooks/square")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "shopify-test-secret")
os.environ.setdefault("CLOVER_WEBHOOK_SECRET", "clover-test-secret")
os.environ.setdefault("TOAST_WEBHOOK_SECRET", "toast-test-secret")
os.environ.setdefault("APPOINTMENT_WEBHOOK_SECRET", "appointments-test-secret")
os.environ.setdefault("TRANSFER_GATEWAY_BACKEND", "disabled")
os.environ.setdefault("STORAGE_RETRY_BASE_DELAY", "0")
os.environ.setdefault("PAYOUT_REFUND_BASE_DELAY", "0")

import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from loyalty_core.transfers.base import TransferGateway, TransferRequest, TransferResult


class FakeRedis:
    """Just enough of redis.asyncio for the fixed-window counter."""

    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True


class BrokenRedis:
    async def incr(self, key: str) -> int:
        raise ConnectionError("redis down")

    async def expire(self, key: str, seconds: int) -> bool:
        raise ConnectionError("redis down")


class ScriptedGateway(TransferGateway):
    """Returns queued outcomes; an Exception in the queue is raised instead."""

    def __init__(self, *outcomes, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes) or [TransferResult(success=True, transfer_ref="0xabc")]
        self.delay = delay
        self.calls: list[TransferRequest] = []
        self.statuses: dict[str, TransferResult] = {}

    async def transfer(self, request: TransferRequest) -> TransferResult:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def get_status(self, idempotency_key: str) -> TransferResult:
        return self.statuses.get(idempotency_key, TransferResult(success=False, error_code="not_found"))


@pytest_asyncio.fixture(autouse=True)
async def db(monkeypatch):
    """Fresh in-memory MongoDB per test, initialised through init_db."""
    from loyalty_core.db import init as db_init
    mongo = AsyncMongoMockClient()
    monkeypatch.setattr(db_init, "AsyncIOMotorClient", lambda *args, **kwargs: mongo)
    await db_init.init_db()
    yield mongo


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def merchant():
    from loyalty_core.models.merchant import Location, Merchant, PayoutMilestone
    m = Merchant(
        slug="brew-house",
        name="Brew House",
        points_per_currency_unit=1.5,
        welcome_points=50,
        earn_per_visit=10,
        birthday_points=25,
        payouts_enabled=True,
        payout_wallet_address="0x" + "a" * 40,
        payout_milestones=[
            PayoutMilestone(id="m100", name="Starter", points_required=100, payout_amount="5.00"),
            PayoutMilestone(id="m500", name="Big", points_required=500, payout_amount="30.00"),
        ],
        provider_accounts={
            "square": "LOC1",
            "shopify": "brew.myshopify.com",
            "clover": "CLV1",
            "toast": "TOAST1",
            "appointments": "BIZ1",
        },
        locations=[Location(id="front", name="Front counter")],
    )
    await m.insert()
    return m


@pytest_asyncio.fixture
async def api_key(merchant) -> str:
    from loyalty_core.services.api_keys import create_api_key
    _, raw = await create_api_key(merchant.id, "tests", permissions=["*"])
    return raw


@pytest_asyncio.fixture
async def client(redis) -> AsyncGenerator[AsyncClient, None]:
    from loyalty_core.main import app
    app.state.redis = redis
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
