"""Run ARQ worker. Usage: python -m loyalty_core.worker.run_worker"""

import asyncio

from arq import run_worker

from loyalty_core.worker.cron import CRON_JOBS
from loyalty_core.worker.tasks import get_redis_settings, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions: list = []
    cron_jobs = CRON_JOBS
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    asyncio.set_event_loop(asyncio.new_event_loop())
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
