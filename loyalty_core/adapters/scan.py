"""In-store QR visit: signed location token + member email -> one visit event per day."""

from datetime import datetime

from loyalty_core.adapters.base import NormalizedEvent
from loyalty_core.core.exceptions import BadRequestError, UnauthorizedError
from loyalty_core.core.security import load_location_token
from loyalty_core.models.merchant import Merchant


def read_location_token(token: str) -> tuple[str, str]:
    """(merchant slug, location id) from a QR token."""
    payload = load_location_token(token or "")
    if not payload or not payload.get("m") or not payload.get("l"):
        raise UnauthorizedError("Invalid or expired QR code")
    return payload["m"], payload["l"]


def visit_event(merchant: Merchant, location_id: str, email: str, now: datetime | None = None) -> NormalizedEvent:
    """The external id carries the day, so a second scan the same day is a duplicate."""
    if merchant.locations and location_id not in {loc.id for loc in merchant.locations}:
        raise BadRequestError("Unknown location")
    now = now or datetime.utcnow()
    return NormalizedEvent(
        external_id=f"{location_id}:{email}:{now.strftime('%Y-%m-%d')}",
        customer_email=email,
        occurred_at=now,
        fixed_points=merchant.earn_per_visit,
        metadata={"location_id": location_id},
    )
