import pytest

pytestmark = pytest.mark.asyncio


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers.get("X-Request-ID")


async def test_unknown_route_keeps_request_id(client):
    r = await client.get("/nope", headers={"X-Request-ID": "req-123"})
    assert r.status_code == 404
    assert r.headers["X-Request-ID"] == "req-123"
