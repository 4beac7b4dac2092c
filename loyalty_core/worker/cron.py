"""Cron schedule for reconciliation sweeps."""

from arq.cron import cron

from loyalty_core.worker.tasks import flush_pending_ledger, reconcile_payouts, replay_unapplied_events

CRON_JOBS = [
    cron(reconcile_payouts, minute=set(range(0, 60, 2)), second=0, unique=True),
    cron(replay_unapplied_events, minute=set(range(1, 60, 5)), second=15, unique=True),
    cron(flush_pending_ledger, minute=set(range(3, 60, 5)), second=30, unique=True),
]
