"""Shared FastAPI dependencies."""

from fastapi import Depends, Header, Request

from loyalty_core.models.api_key import ApiKey
from loyalty_core.models.merchant import Merchant
from loyalty_core.services import api_keys as api_keys_service
from loyalty_core.services.settlement import get_merchant_by_slug


def get_redis(request: Request):
    """Redis client set at startup; None when unavailable (rate guard then fails open)."""
    return getattr(request.app.state, "redis", None)


def require_api_key(permission: str):
    """Dependency factory: authenticated API key holding `permission`."""

    async def _dependency(request: Request, authorization: str | None = Header(default=None)) -> ApiKey:
        return await api_keys_service.authenticate(get_redis(request), authorization, permission)

    return _dependency


async def get_api_merchant(key: ApiKey) -> Merchant:
    from loyalty_core.core.exceptions import UnauthorizedError
    merchant = await Merchant.get(key.merchant_id)
    if not merchant or not merchant.enabled:
        raise UnauthorizedError("Merchant disabled")
    return merchant


async def merchant_from_slug(slug: str) -> Merchant:
    return await get_merchant_by_slug(slug)


def require_merchant_key(permission: str):
    """
    Dependency factory for /{slug} routes acting on a member's behalf: the caller
    must hold an API key of that same merchant. The merchant's own app is
    responsible for authenticating the member before calling.
    """
    key_dependency = require_api_key(permission)

    async def _dependency(slug: str, key: ApiKey = Depends(key_dependency)) -> Merchant:
        from loyalty_core.core.exceptions import ForbiddenError
        merchant = await get_merchant_by_slug(slug)
        if merchant.id != key.merchant_id:
            raise ForbiddenError("API key does not belong to this merchant")
        return merchant

    return _dependency
