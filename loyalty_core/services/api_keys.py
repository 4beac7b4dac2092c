"""Merchant API keys: issue, authenticate, per-key hourly rate limit."""

from datetime import datetime

from beanie import PydanticObjectId

from loyalty_core.core.exceptions import BadRequestError, ForbiddenError, RateLimitedError, UnauthorizedError
from loyalty_core.core.logging import get_logger
from loyalty_core.core.security import API_KEY_PREFIX, generate_api_key, hash_api_key
from loyalty_core.models.api_key import PERMISSIONS, ApiKey
from loyalty_core.services.rate_limit import check_and_increment

log = get_logger(__name__)


async def create_api_key(
    merchant_id: PydanticObjectId,
    name: str,
    permissions: list[str] | None = None,
    rate_limit: int = 1000,
    expires_at: datetime | None = None,
) -> tuple[ApiKey, str]:
    """Return (record, raw key). The raw key is only available here."""
    permissions = permissions or ["write:orders", "read:orders"]
    unknown = [p for p in permissions if p != "*" and p not in PERMISSIONS]
    if unknown:
        raise BadRequestError("Unknown permissions", details={"permissions": unknown})
    raw = generate_api_key()
    key = ApiKey(
        merchant_id=merchant_id,
        name=name,
        key_prefix=raw[: len(API_KEY_PREFIX) + 8],
        key_hash=hash_api_key(raw),
        permissions=permissions,
        rate_limit=rate_limit,
        expires_at=expires_at,
    )
    await key.insert()
    log.info("api_key_created", merchant_id=str(merchant_id), key_id=str(key.id))
    return key, raw


async def authenticate(redis, authorization: str | None, permission: str) -> ApiKey:
    """Resolve a Bearer key, check expiry, permission and the key's hourly limit."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise UnauthorizedError("Missing API key")
    raw = authorization[7:].strip()
    if not raw.startswith(API_KEY_PREFIX):
        raise UnauthorizedError("Invalid API key")
    key = await ApiKey.find_one(ApiKey.key_hash == hash_api_key(raw))
    if not key or not key.is_active:
        raise UnauthorizedError("Invalid API key")
    if key.expires_at and key.expires_at < datetime.utcnow():
        raise UnauthorizedError("API key expired")
    if not key.allows(permission):
        raise ForbiddenError(f"API key lacks permission: {permission}")
    limit = await check_and_increment(redis, f"apikey:{key.id}", key.rate_limit, 3600)
    if not limit.allowed:
        raise RateLimitedError(limit.reset_in, "API key rate limit exceeded")
    await ApiKey.find_one({"_id": key.id}).update({"$set": {"last_used_at": datetime.utcnow()}})
    return key


async def revoke_api_key(key_id: PydanticObjectId, merchant_id: PydanticObjectId) -> None:
    await ApiKey.find_one({"_id": key_id, "merchant_id": merchant_id}).update({"$set": {"is_active": False}})
