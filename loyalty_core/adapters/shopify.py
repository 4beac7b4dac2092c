from typing import Any, Mapping

from loyalty_core.adapters.base import NormalizedEvent, ProviderAdapter, header, parse_datetime
from loyalty_core.core.security import hmac_sha256_base64
from loyalty_core.models.merchant import Merchant
from loyalty_core.services.ledger import to_minor_units

PAID_STATUSES = ("paid", "partially_refunded", "refunded")


class ShopifyAdapter(ProviderAdapter):
    channel = "shopify"
    signature_header = "x-shopify-hmac-sha256"
    global_secret_setting = "shopify_webhook_secret"

    def account_ref(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str | None:
        return header(headers, "x-shopify-shop-domain")

    def expected_signature(self, raw_body: bytes, secret: str) -> str:
        return hmac_sha256_base64(secret, raw_body)

    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str], merchant: Merchant) -> list[NormalizedEvent]:
        topic = header(headers, "x-shopify-topic") or ""
        if topic == "orders/paid" or (topic == "orders/create" and payload.get("financial_status") in PAID_STATUSES):
            return self._order(payload)
        if topic == "refunds/create":
            return self._refund(payload)
        return []

    def _order(self, order: dict[str, Any]) -> list[NormalizedEvent]:
        if not order.get("id"):
            return []
        customer = order.get("customer") or {}
        currency = order.get("currency") or "USD"
        return [
            NormalizedEvent(
                external_id=str(order["id"]),
                customer_email=order.get("email") or customer.get("email"),
                first_name=customer.get("first_name") or "",
                last_name=customer.get("last_name") or "",
                amount_minor=to_minor_units(order.get("total_price") or "0", currency),
                currency=currency,
                occurred_at=parse_datetime(order.get("processed_at") or order.get("created_at")),
                metadata={"order_number": order.get("order_number")},
            )
        ]

    def _refund(self, refund: dict[str, Any]) -> list[NormalizedEvent]:
        if not refund.get("id") or not refund.get("order_id"):
            return []
        total = 0
        currency = "USD"
        for tx in refund.get("transactions") or []:
            if tx.get("kind") == "refund" and tx.get("status", "success") == "success":
                currency = tx.get("currency") or currency
                total += to_minor_units(tx.get("amount") or "0", currency)
        if total <= 0:
            return []
        return [
            NormalizedEvent(
                external_id=f"refund:{refund['id']}",
                kind="REFUND",
                amount_minor=total,
                currency=currency,
                occurred_at=parse_datetime(refund.get("created_at")),
                refund_of=str(refund["order_id"]),
            )
        ]
