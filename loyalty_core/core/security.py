import base64
import hashlib
import hmac
import secrets
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from loyalty_core.core.config import get_settings

API_KEY_PREFIX = "lk_live_"


def hmac_sha256_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def hmac_sha256_base64(secret: str, payload: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def signatures_match(expected: str, received: str | None) -> bool:
    """Constant-time comparison; a missing signature never matches."""
    if not received or not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.strip().encode("utf-8"))


def get_qr_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.qr_secret or settings.secret_key,
        salt="loyalty-location-qr",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_location_token(merchant_slug: str, location_id: str) -> str:
    """Signed payload printed into a location's QR code."""
    return get_qr_serializer().dumps({"m": merchant_slug, "l": location_id})


def load_location_token(token: str) -> dict[str, Any] | None:
    try:
        return get_qr_serializer().loads(token, max_age=get_settings().qr_max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(32)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()
