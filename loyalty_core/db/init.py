import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from loyalty_core.core.config import get_settings
from loyalty_core.models import (
    ApiKey,
    AuditLog,
    FailedJob,
    LedgerTransaction,
    Member,
    MembershipAccount,
    Merchant,
    PayoutClaim,
    SettlementEvent,
)

DOCUMENT_MODELS = [
    Merchant,
    Member,
    MembershipAccount,
    SettlementEvent,
    LedgerTransaction,
    PayoutClaim,
    ApiKey,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true)."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> None:
    settings = get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
