from loyalty_core.adapters.appointments import AppointmentsAdapter
from loyalty_core.adapters.base import ProviderAdapter
from loyalty_core.adapters.clover import CloverAdapter
from loyalty_core.adapters.shopify import ShopifyAdapter
from loyalty_core.adapters.square import SquareAdapter
from loyalty_core.adapters.toast import ToastAdapter
from loyalty_core.core.exceptions import NotFoundError

ADAPTERS: dict[str, ProviderAdapter] = {
    a.channel: a
    for a in (SquareAdapter(), ShopifyAdapter(), CloverAdapter(), ToastAdapter(), AppointmentsAdapter())
}


def get_adapter(channel: str) -> ProviderAdapter:
    adapter = ADAPTERS.get(channel)
    if adapter is None:
        raise NotFoundError(f"Unknown provider: {channel}")
    return adapter
