from datetime import datetime
from typing import Any, Mapping

from loyalty_core.adapters.base import NormalizedEvent, ProviderAdapter, parse_datetime
from loyalty_core.core.security import hmac_sha256_hex
from loyalty_core.models.merchant import Merchant

PAID_STATES = ("paid", "locked")


class CloverAdapter(ProviderAdapter):
    channel = "clover"
    signature_header = "x-clover-signature"
    global_secret_setting = "clover_webhook_secret"

    def account_ref(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str | None:
        return payload.get("merchantId") or payload.get("merchant_id")

    def expected_signature(self, raw_body: bytes, secret: str) -> str:
        return hmac_sha256_hex(secret, raw_body)

    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str], merchant: Merchant) -> list[NormalizedEvent]:
        event_type = (payload.get("type") or "").upper()
        obj = payload.get("object") or {}
        if event_type == "REFUND":
            return self._refund(obj)
        if event_type not in ("ORDER", "ORDER_PAID", "PAYMENT"):
            return []
        order_id = obj.get("id") or payload.get("objectId")
        if not order_id or (obj.get("state") or "paid").lower() not in PAID_STATES:
            return []
        customers = (obj.get("customers") or {}).get("elements") or []
        customer = customers[0] if customers else {}
        emails = (customer.get("emailAddresses") or {}).get("elements") or []
        return [
            NormalizedEvent(
                external_id=str(order_id),
                customer_email=emails[0].get("emailAddress") if emails else None,
                first_name=customer.get("firstName") or "",
                last_name=customer.get("lastName") or "",
                amount_minor=int(obj.get("total") or 0),  # Clover totals are in cents
                currency=obj.get("currency") or "USD",
                occurred_at=_from_millis(obj.get("createdTime")),
            )
        ]

    def _refund(self, obj: dict[str, Any]) -> list[NormalizedEvent]:
        payment = obj.get("payment") or {}
        order = payment.get("order") or obj.get("order") or {}
        if not obj.get("id") or not order.get("id"):
            return []
        return [
            NormalizedEvent(
                external_id=f"refund:{obj['id']}",
                kind="REFUND",
                amount_minor=int(obj.get("amount") or 0),
                currency=obj.get("currency") or "USD",
                occurred_at=_from_millis(obj.get("createdTime")),
                refund_of=str(order["id"]),
            )
        ]


def _from_millis(value: Any):
    if isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value / 1000)
    return parse_datetime(value)
