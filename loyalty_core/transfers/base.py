from abc import ABC, abstractmethod
from dataclasses import dataclass

from loyalty_core.core.config import get_settings


@dataclass
class TransferRequest:
    idempotency_key: str  # payout claim id; gateways must not execute the same key twice
    source_address: str
    destination_address: str
    amount: str
    currency: str
    network: str


@dataclass
class TransferResult:
    success: bool
    transfer_ref: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    pending: bool = False


class TransferGateway(ABC):
    @abstractmethod
    async def transfer(self, request: TransferRequest) -> TransferResult:
        """Move value; raise TransferFailureError or return success=False on failure."""
        ...

    @abstractmethod
    async def get_status(self, idempotency_key: str) -> TransferResult:
        """Outcome of an earlier transfer; pending=True while it is still in flight."""
        ...


def get_transfer_gateway() -> TransferGateway:
    settings = get_settings()
    if settings.transfer_gateway_backend == "disabled" or not settings.transfer_gateway_url:
        from loyalty_core.transfers.disabled import DisabledTransferGateway
        return DisabledTransferGateway()
    from loyalty_core.transfers.http import HttpTransferGateway
    return HttpTransferGateway()
