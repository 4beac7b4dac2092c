"""Orders submitted by merchants through the public API."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from loyalty_core.adapters.base import NormalizedEvent
from loyalty_core.services.ledger import to_minor_units


class OrderSubmission(BaseModel):
    external_id: str = Field(min_length=1, max_length=200)
    source: str = Field(default="api", min_length=1, max_length=50)
    customer_email: str = Field(min_length=3, max_length=254)
    customer_first_name: str = ""
    customer_last_name: str = ""
    order_total: Decimal = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    order_date: datetime | None = None
    idempotency_key: str | None = Field(default=None, max_length=200)
    metadata: dict = Field(default_factory=dict)


def order_event(order: OrderSubmission) -> NormalizedEvent:
    currency = order.currency.upper()
    occurred_at = order.order_date
    if occurred_at is not None and occurred_at.tzinfo is not None:
        occurred_at = datetime.utcfromtimestamp(occurred_at.timestamp())
    return NormalizedEvent(
        external_id=order.external_id,
        customer_email=order.customer_email,
        first_name=order.customer_first_name,
        last_name=order.customer_last_name,
        amount_minor=to_minor_units(order.order_total, currency),
        currency=currency,
        occurred_at=occurred_at,
        metadata=order.metadata,
    )
