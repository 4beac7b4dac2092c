import httpx

from loyalty_core.core.config import get_settings
from loyalty_core.core.exceptions import TransferFailureError
from loyalty_core.core.logging import get_logger
from loyalty_core.transfers.base import TransferGateway, TransferRequest, TransferResult

log = get_logger(__name__)


class HttpTransferGateway(TransferGateway):
    """JSON-over-HTTP payment rail (custody service in front of the chain)."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self.base_url = settings.transfer_gateway_url.rstrip("/")
        self.token = settings.transfer_gateway_token
        self.timeout = settings.transfer_timeout_seconds
        self._client = client

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, self.base_url + path, timeout=self.timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, self.base_url + path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransferFailureError("Transfer gateway timed out", code="timeout") from e
        except httpx.HTTPError as e:
            raise TransferFailureError(f"Transfer gateway unreachable: {e}", code="gateway_unreachable") from e

    @staticmethod
    def _parse(resp: httpx.Response) -> TransferResult:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        status = (data.get("status") or "").lower()
        if resp.status_code < 300 and status in ("success", "confirmed", "completed"):
            return TransferResult(success=True, transfer_ref=data.get("tx_hash") or data.get("transfer_ref"))
        if resp.status_code < 300 and status in ("pending", "submitted"):
            return TransferResult(success=False, pending=True, transfer_ref=data.get("tx_hash"))
        return TransferResult(
            success=False,
            error_code=data.get("error_code") or f"http_{resp.status_code}",
            error_message=data.get("error") or resp.text[:500],
        )

    async def transfer(self, request: TransferRequest) -> TransferResult:
        resp = await self._request(
            "POST",
            "/transfers",
            json={
                "from": request.source_address,
                "to": request.destination_address,
                "amount": request.amount,
                "currency": request.currency,
                "network": request.network,
            },
            headers=self._headers(request.idempotency_key),
        )
        result = self._parse(resp)
        log.info(
            "transfer_gateway_response",
            idempotency_key=request.idempotency_key,
            status_code=resp.status_code,
            success=result.success,
            error_code=result.error_code,
        )
        return result

    async def get_status(self, idempotency_key: str) -> TransferResult:
        resp = await self._request("GET", f"/transfers/{idempotency_key}", headers=self._headers())
        if resp.status_code == 404:
            return TransferResult(success=False, error_code="not_found")
        return self._parse(resp)
