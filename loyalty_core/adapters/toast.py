from typing import Any, Mapping

from loyalty_core.adapters.base import NormalizedEvent, ProviderAdapter, header, parse_datetime
from loyalty_core.core.security import hmac_sha256_hex
from loyalty_core.models.merchant import Merchant
from loyalty_core.services.ledger import to_minor_units

ORDER_EVENTS = ("ORDER_PAID", "ORDER_CLOSED", "ORDER_UPDATED")


class ToastAdapter(ProviderAdapter):
    channel = "toast"
    signature_header = "toast-signature"
    global_secret_setting = "toast_webhook_secret"

    def account_ref(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str | None:
        return header(headers, "toast-restaurant-external-id") or payload.get("restaurantGuid")

    def expected_signature(self, raw_body: bytes, secret: str) -> str:
        return hmac_sha256_hex(secret, raw_body)

    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str], merchant: Merchant) -> list[NormalizedEvent]:
        event_type = (payload.get("eventType") or "").upper()
        details = payload.get("details") or {}
        order = details.get("order") or payload.get("order") or {}
        if event_type == "PAYMENT_REFUND":
            return self._refund(details, order)
        if event_type not in ORDER_EVENTS or not order.get("guid"):
            return []
        checks = order.get("checks") or []
        paid = [c for c in checks if (c.get("paymentStatus") or "PAID").upper() in ("PAID", "CLOSED")]
        if not paid:
            return []
        email = (order.get("customer") or {}).get("email")
        first_name = last_name = ""
        total = 0
        for check in paid:
            # Toast amounts are decimal major units
            total += to_minor_units(check.get("totalAmount") or 0)
            customer = check.get("customer") or {}
            if not email and customer.get("email"):
                email = customer["email"]
                first_name = customer.get("firstName") or ""
                last_name = customer.get("lastName") or ""
        return [
            NormalizedEvent(
                external_id=order["guid"],
                customer_email=email,
                first_name=first_name,
                last_name=last_name,
                amount_minor=total,
                currency="USD",
                occurred_at=parse_datetime(order.get("closedDate") or order.get("openedDate")),
                metadata={"order_number": order.get("displayNumber")},
            )
        ]

    def _refund(self, details: dict[str, Any], order: dict[str, Any]) -> list[NormalizedEvent]:
        refund = details.get("refund") or {}
        order_guid = order.get("guid") or refund.get("orderGuid")
        if not refund.get("guid") or not order_guid:
            return []
        return [
            NormalizedEvent(
                external_id=f"refund:{refund['guid']}",
                kind="REFUND",
                amount_minor=to_minor_units(refund.get("refundAmount") or 0),
                occurred_at=parse_datetime(refund.get("refundDate")),
                refund_of=order_guid,
            )
        ]
