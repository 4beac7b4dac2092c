"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from loyalty_core.core.config import get_settings
from loyalty_core.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from loyalty_core.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


def _job_id(ctx: dict[str, Any]) -> str | None:
    return ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None


async def reconcile_payouts(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron: settle payout claims stuck before a terminal status."""
    from loyalty_core.services.reconciliation import reconcile_stuck_claims
    after = get_settings().reconcile_after_seconds
    return await _run_with_dlq("reconcile_payouts", _job_id(ctx), [], {}, reconcile_stuck_claims(after))


async def replay_unapplied_events(ctx: dict[str, Any]) -> int:
    """Cron: apply events recorded but never applied to the ledger."""
    from loyalty_core.services.reconciliation import replay_unapplied_events as _replay
    after = get_settings().reconcile_after_seconds
    return await _run_with_dlq("replay_unapplied_events", _job_id(ctx), [], {}, _replay(after))


async def flush_pending_ledger(ctx: dict[str, Any]) -> int:
    """Cron: copy stranded pending ledger entries into the transaction log."""
    from loyalty_core.services.reconciliation import flush_stranded_pending
    after = get_settings().reconcile_after_seconds
    return await _run_with_dlq("flush_pending_ledger", _job_id(ctx), [], {}, flush_stranded_pending(after))


async def startup(ctx: dict) -> None:
    from loyalty_core.core.logging import configure_logging
    from loyalty_core.db.init import init_db
    configure_logging(debug=get_settings().debug, service="loyalty-worker")
    log.info("worker_startup")
    await init_db()


async def shutdown(ctx: dict) -> None:
    log.info("worker_shutdown")


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path and u.path != "/" else 0,
    )
