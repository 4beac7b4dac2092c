from loyalty_core.transfers.base import TransferGateway, TransferRequest, TransferResult


class DisabledTransferGateway(TransferGateway):
    """Used when no payment rail is configured; every transfer fails and gets refunded."""

    async def transfer(self, request: TransferRequest) -> TransferResult:
        return TransferResult(success=False, error_code="gateway_not_configured", error_message="Payout rail not configured")

    async def get_status(self, idempotency_key: str) -> TransferResult:
        return TransferResult(success=False, error_code="not_found")
