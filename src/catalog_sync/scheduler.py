"""
Scheduler for reconcile runs and rate limiter housekeeping.

Uses APScheduler to periodically:
1. Queue a Reconcile task for every enabled tenant
2. Drop rate budgets of idle tenants
"""

from typing import Any

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from catalog_sync.rate_limiter import MultiWindowRateLimiter
from catalog_sync.tasks import SyncMode, SyncTask, TaskQueue
from catalog_sync.tenants import TenantRegistry

logger = structlog.get_logger(__name__)


class SyncScheduler:
    """
    Time-driven task producer.

    Reconcile runs for every enabled tenant on each tick, whether or not
    its webhooks look healthy. Delivery is not guaranteed, so there is no
    skip condition.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        queue: TaskQueue,
        rate_limiter: MultiWindowRateLimiter | None = None,
        reconcile_interval_hours: float = 6.0,
        prune_interval_minutes: float = 5.0,
        idle_budget_seconds: float = 3600.0,
    ):
        if reconcile_interval_hours <= 0:
            raise ValueError("reconcile_interval_hours must be positive")
        self.registry = registry
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.reconcile_interval_hours = reconcile_interval_hours
        self.prune_interval_minutes = prune_interval_minutes
        self.idle_budget_seconds = idle_budget_seconds
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def setup(self) -> None:
        """Register jobs without starting."""
        self.scheduler.add_job(
            self.fan_out_reconcile,
            trigger=IntervalTrigger(hours=self.reconcile_interval_hours),
            id="reconcile_fanout",
            name="Reconcile all enabled tenants",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        if self.rate_limiter is not None:
            self.scheduler.add_job(
                self.prune_rate_budgets,
                trigger=IntervalTrigger(minutes=self.prune_interval_minutes),
                id="rate_limiter_prune",
                name="Drop idle rate budgets",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

    def start(self) -> None:
        self.setup()
        self.scheduler.start()
        logger.info(
            "Scheduler started",
            reconcile_every_hours=self.reconcile_interval_hours,
            jobs=[job.id for job in self.scheduler.get_jobs()],
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def fan_out_reconcile(self) -> int:
        """Queue a Reconcile for every enabled tenant. Returns tasks queued."""
        queued = 0
        tenants = self.registry.enabled_tenants()
        for tenant in tenants:
            if self.queue.put(SyncTask(tenant.id, SyncMode.RECONCILE)):
                queued += 1
        logger.info("Reconcile fan-out", tenants=len(tenants), queued=queued)
        return queued

    def prune_rate_budgets(self) -> int:
        if self.rate_limiter is None:
            return 0
        return self.rate_limiter.prune_idle(self.idle_budget_seconds)

    def get_jobs(self) -> list[dict[str, Any]]:
        """Registered jobs and their next run time."""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })
        return jobs
