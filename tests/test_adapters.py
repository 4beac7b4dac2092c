import base64
import hashlib
import hmac
import json

import pytest

from loyalty_core.adapters.api_orders import OrderSubmission, order_event
from loyalty_core.adapters.appointments import AppointmentsAdapter
from loyalty_core.adapters.clover import CloverAdapter
from loyalty_core.adapters.registry import get_adapter
from loyalty_core.adapters.scan import read_location_token, visit_event
from loyalty_core.adapters.shopify import ShopifyAdapter
from loyalty_core.adapters.square import SquareAdapter
from loyalty_core.adapters.toast import ToastAdapter
from loyalty_core.core.encryption import encrypt_secret
from loyalty_core.core.exceptions import NotFoundError, UnauthorizedError
from loyalty_core.core.security import create_location_token
from loyalty_core.models.merchant import Location, Merchant

pytestmark = pytest.mark.asyncio

def _merchant() -> Merchant:
    return Merchant(slug="m", name="M", locations=[Location(id="front")])


def _b64(secret: str, body: bytes) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def test_square_payment_and_signature():
    adapter = SquareAdapter()
    payload = {
        "type": "payment.updated",
        "data": {
            "object": {
                "payment": {
                    "id": "PAY1",
                    "location_id": "LOC1",
                    "status": "COMPLETED",
                    "receipt_email": "buyer@example.com",
                    "total_money": {"amount": 1999, "currency": "USD"},
                    "created_at": "2026-03-01T10:00:00Z",
                }
            }
        },
    }
    raw = json.dumps(payload).encode()
    sig = _b64("square-test-key", b"https://loyalty.test/v1/webhooks/square" + raw)
    assert adapter.verify(raw, {"x-square-hmacsha256-signature": sig}, "square-test-key")
    assert not adapter.verify(raw, {"x-square-hmacsha256-signature": sig}, "wrong-key")
    assert not adapter.verify(raw, {}, "square-test-key")
    assert adapter.account_ref(payload, {}) == "LOC1"

    (event,) = adapter.normalize(payload, {}, _merchant())
    assert event.external_id == "PAY1"
    assert event.amount_minor == 1999
    assert event.customer_email == "buyer@example.com"
    assert event.occurred_at.hour == 10


async def test_square_ignores_incomplete_and_maps_refunds():
    adapter = SquareAdapter()
    pending = {"type": "payment.created", "data": {"object": {"payment": {"id": "P", "status": "APPROVED"}}}}
    assert adapter.normalize(pending, {}, _merchant()) == []
    refund = {
        "type": "refund.updated",
        "data": {"object": {"refund": {"id": "R1", "payment_id": "PAY1", "status": "COMPLETED", "amount_money": {"amount": 500}}}},
    }
    (event,) = adapter.normalize(refund, {}, _merchant())
    assert event.kind == "REFUND"
    assert event.refund_of == "PAY1"
    assert event.external_id == "refund:R1"


async def test_shopify_topics():
    adapter = ShopifyAdapter()
    order = {"id": 42, "email": "s@example.com", "total_price": "25.50", "currency": "USD", "financial_status": "pending"}
    headers = {"x-shopify-topic": "orders/create", "x-shopify-shop-domain": "brew.myshopify.com"}
    assert adapter.normalize(order, headers, _merchant()) == []
    (event,) = adapter.normalize(order, {**headers, "x-shopify-topic": "orders/paid"}, _merchant())
    assert event.amount_minor == 2550
    assert event.external_id == "42"
    assert adapter.account_ref(order, headers) == "brew.myshopify.com"

    refund = {"id": 7, "order_id": 42, "transactions": [{"kind": "refund", "status": "success", "amount": "5.00"}]}
    (r,) = adapter.normalize(refund, {"x-shopify-topic": "refunds/create"}, _merchant())
    assert r.kind == "REFUND" and r.amount_minor == 500 and r.refund_of == "42"

    raw = json.dumps(order).encode()
    assert adapter.verify(raw, {"x-shopify-hmac-sha256": _b64("k", raw)}, "k")


async def test_clover_order_in_cents():
    adapter = CloverAdapter()
    payload = {
        "type": "ORDER",
        "merchantId": "CLV1",
        "object": {
            "id": "ORD1",
            "state": "paid",
            "total": 1250,
            "customers": {"elements": [{"firstName": "Ann", "emailAddresses": {"elements": [{"emailAddress": "ann@example.com"}]}}]},
            "createdTime": 1767225600000,
        },
    }
    (event,) = adapter.normalize(payload, {}, _merchant())
    assert event.amount_minor == 1250
    assert event.customer_email == "ann@example.com"
    assert event.first_name == "Ann"
    raw = json.dumps(payload).encode()
    assert adapter.verify(raw, {"x-clover-signature": _hex("c", raw)}, "c")


async def test_toast_checks_sum():
    adapter = ToastAdapter()
    payload = {
        "eventType": "ORDER_PAID",
        "restaurantGuid": "TOAST1",
        "details": {
            "order": {
                "guid": "G1",
                "checks": [
                    {"totalAmount": 10.25, "paymentStatus": "PAID", "customer": {"email": "t@example.com"}},
                    {"totalAmount": 4.75, "paymentStatus": "PAID"},
                ],
            }
        },
    }
    (event,) = adapter.normalize(payload, {}, _merchant())
    assert event.amount_minor == 1500
    assert event.customer_email == "t@example.com"
    assert adapter.account_ref(payload, {}) == "TOAST1"


async def test_appointments_completed_and_cancelled():
    adapter = AppointmentsAdapter()
    data = {"id": 99, "business_id": "BIZ1", "customer_email": "c@example.com", "total_price": "80", "currency": "USD"}
    (done,) = adapter.normalize({"event_type": "appointment.completed", "data": data}, {}, _merchant())
    assert done.external_id == "99" and done.amount_minor == 8000
    (cancel,) = adapter.normalize({"event_type": "appointment.cancelled", "data": data}, {}, _merchant())
    assert cancel.kind == "REFUND" and cancel.refund_of == "99"
    assert adapter.normalize({"event_type": "appointment.created", "data": data}, {}, _merchant()) == []


async def test_merchant_secret_overrides_global():
    adapter = get_adapter("clover")
    m = Merchant(slug="x", name="X", webhook_secrets={"clover": encrypt_secret("per-merchant")})
    assert adapter.secret_for(m) == "per-merchant"
    assert adapter.secret_for(None) == "clover-test-secret"
    with pytest.raises(NotFoundError):
        get_adapter("paypal")


async def test_scan_token_and_daily_external_id():
    token = create_location_token("m", "front")
    assert read_location_token(token) == ("m", "front")
    with pytest.raises(UnauthorizedError):
        read_location_token(token + "x")
    event = visit_event(_merchant(), "front", "v@example.com")
    assert event.external_id.startswith("front:v@example.com:")
    assert event.fixed_points == 10


async def test_api_order_to_minor_units():
    order = OrderSubmission(external_id="o-1", customer_email="a@example.com", order_total="19.99")
    event = order_event(order)
    assert event.amount_minor == 1999
    assert event.currency == "USD"
