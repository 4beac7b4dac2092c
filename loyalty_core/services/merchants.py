"""Merchant configuration changes made through the admin API."""

from datetime import datetime

from loyalty_core.adapters.registry import get_adapter
from loyalty_core.core.audit import log_event
from loyalty_core.core.encryption import encrypt_secret
from loyalty_core.core.exceptions import BadRequestError
from loyalty_core.core.logging import get_logger
from loyalty_core.models.merchant import Merchant

log = get_logger(__name__)


async def set_webhook_secret(merchant: Merchant, channel: str, secret: str) -> None:
    """Store a provider signing secret for this merchant, Fernet-encrypted at rest."""
    adapter = get_adapter(channel)
    secret = (secret or "").strip()
    if len(secret) < 8:
        raise BadRequestError("Webhook secret is too short")
    encrypted = encrypt_secret(secret)
    await Merchant.find_one({"_id": merchant.id}).update(
        {"$set": {f"webhook_secrets.{adapter.channel}": encrypted, "updated_at": datetime.utcnow()}}
    )
    merchant.webhook_secrets[adapter.channel] = encrypted
    await log_event(merchant.id, "webhook_secret_set", "merchant", str(merchant.id), {"channel": adapter.channel})
    log.info("webhook_secret_set", merchant_id=str(merchant.id), channel=adapter.channel)


async def set_provider_account(merchant: Merchant, channel: str, account_ref: str) -> None:
    """Link the provider-side account id (location, shop domain, ...) used to route webhooks."""
    adapter = get_adapter(channel)
    account_ref = (account_ref or "").strip()
    if not account_ref:
        raise BadRequestError("Provider account id is required")
    await Merchant.find_one({"_id": merchant.id}).update(
        {"$set": {f"provider_accounts.{adapter.channel}": account_ref, "updated_at": datetime.utcnow()}}
    )
    merchant.provider_accounts[adapter.channel] = account_ref
    log.info("provider_account_set", merchant_id=str(merchant.id), channel=adapter.channel)
