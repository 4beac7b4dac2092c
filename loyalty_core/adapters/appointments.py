from typing import Any, Mapping

from loyalty_core.adapters.base import NormalizedEvent, ProviderAdapter, parse_datetime
from loyalty_core.core.security import hmac_sha256_hex
from loyalty_core.models.merchant import Merchant
from loyalty_core.services.ledger import to_minor_units

COMPLETED_EVENTS = ("appointment.completed", "appointment.finished", "appointment.checked_out")
REVERSAL_EVENTS = ("appointment.cancelled", "appointment.refunded")


class AppointmentsAdapter(ProviderAdapter):
    """Booking platforms (Booksy, Boulevard, Vagaro style) posting {event_type, data}."""

    channel = "appointments"
    signature_header = "x-webhook-signature"
    global_secret_setting = "appointment_webhook_secret"

    def account_ref(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str | None:
        data = payload.get("data") or {}
        ref = data.get("business_id") or payload.get("business_id")
        return str(ref) if ref else None

    def expected_signature(self, raw_body: bytes, secret: str) -> str:
        return hmac_sha256_hex(secret, raw_body)

    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str], merchant: Merchant) -> list[NormalizedEvent]:
        event_type = payload.get("event_type") or payload.get("type") or ""
        data = payload.get("data") or {}
        appointment_id = data.get("id") or data.get("appointment_id")
        if not appointment_id:
            return []
        appointment_id = str(appointment_id)
        currency = data.get("currency") or "USD"
        amount_minor = to_minor_units(data.get("total_price") or data.get("price") or "0", currency)
        occurred_at = parse_datetime(data.get("datetime") or data.get("date"))
        if event_type in COMPLETED_EVENTS:
            return [
                NormalizedEvent(
                    external_id=appointment_id,
                    customer_email=data.get("customer_email"),
                    first_name=data.get("customer_first_name") or "",
                    last_name=data.get("customer_last_name") or "",
                    amount_minor=amount_minor,
                    currency=currency,
                    occurred_at=occurred_at,
                    metadata={"service_name": data.get("service_name") or data.get("treatment") or ""},
                )
            ]
        if event_type in REVERSAL_EVENTS:
            return [
                NormalizedEvent(
                    external_id=f"{appointment_id}:reversal",
                    kind="REFUND",
                    amount_minor=amount_minor,
                    currency=currency,
                    occurred_at=occurred_at,
                    refund_of=appointment_id,
                )
            ]
        return []
