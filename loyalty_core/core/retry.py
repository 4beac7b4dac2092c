"""Bounded retry with exponential backoff for transient storage failures."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from pymongo.errors import AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError

from loyalty_core.core.exceptions import StorageTransientError
from loyalty_core.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError)


async def with_storage_retry(
    op: Callable[[], Awaitable[T]],
    name: str,
    attempts: int = 3,
    base_delay: float = 0.05,
) -> T:
    """Run op; retry transient driver errors, then raise StorageTransientError."""
    last_error: Exception | None = None
    for attempt in range(attempts):
        try:
            return await op()
        except TRANSIENT_ERRORS as e:
            last_error = e
            log.warning("storage_retry", op=name, attempt=attempt + 1, error=str(e))
            if attempt < attempts - 1:
                await asyncio.sleep(base_delay * (2 ** attempt))
    log.error("storage_retry_exhausted", op=name, attempts=attempts, error=str(last_error))
    raise StorageTransientError() from last_error
