from typing import Any, Mapping

from loyalty_core.adapters.base import NormalizedEvent, ProviderAdapter, parse_datetime
from loyalty_core.core.config import get_settings
from loyalty_core.core.security import hmac_sha256_base64
from loyalty_core.models.merchant import Merchant

PAYMENT_EVENTS = ("payment.created", "payment.updated")
REFUND_EVENTS = ("refund.created", "refund.updated")


class SquareAdapter(ProviderAdapter):
    """Square signs notification_url + body (base64 HMAC-SHA256)."""

    channel = "square"
    signature_header = "x-square-hmacsha256-signature"
    global_secret_setting = "square_webhook_signature_key"

    def account_ref(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str | None:
        obj = (payload.get("data") or {}).get("object") or {}
        record = obj.get("payment") or obj.get("refund") or {}
        return record.get("location_id") or payload.get("location_id")

    def expected_signature(self, raw_body: bytes, secret: str) -> str:
        url = get_settings().square_webhook_url
        return hmac_sha256_base64(secret, url.encode("utf-8") + raw_body)

    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str], merchant: Merchant) -> list[NormalizedEvent]:
        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}
        if event_type in PAYMENT_EVENTS:
            return self._payment(obj.get("payment") or {})
        if event_type in REFUND_EVENTS:
            return self._refund(obj.get("refund") or {})
        return []

    def _payment(self, payment: dict[str, Any]) -> list[NormalizedEvent]:
        # payment.updated also carries refunded_money; refunds are taken from refund.* only
        if not payment.get("id") or payment.get("status") != "COMPLETED":
            return []
        money = payment.get("total_money") or {}
        return [
            NormalizedEvent(
                external_id=payment["id"],
                customer_email=payment.get("receipt_email") or payment.get("buyer_email_address"),
                amount_minor=int(money.get("amount") or 0),
                currency=money.get("currency") or "USD",
                occurred_at=parse_datetime(payment.get("created_at")),
                metadata={"order_id": payment.get("order_id"), "customer_id": payment.get("customer_id")},
            )
        ]

    def _refund(self, refund: dict[str, Any]) -> list[NormalizedEvent]:
        if not refund.get("id") or not refund.get("payment_id") or refund.get("status") != "COMPLETED":
            return []
        money = refund.get("amount_money") or {}
        return [
            NormalizedEvent(
                external_id=f"refund:{refund['id']}",
                kind="REFUND",
                amount_minor=int(money.get("amount") or 0),
                currency=money.get("currency") or "USD",
                occurred_at=parse_datetime(refund.get("updated_at") or refund.get("created_at")),
                refund_of=refund["payment_id"],
            )
        ]
