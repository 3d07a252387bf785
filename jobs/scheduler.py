"""
Subscription Scheduler

Jobs:
1. Expiring-soon notice - hourly
2. Pending transaction reconciliation - every 2 minutes
3. Stale pending cleanup - every 2 hours
4. Expiry sweep - every 10 minutes
5. Delayed unbans - every 30 seconds
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from jobs.subscription_jobs import (
    run_expiring_soon_notice, run_pending_reconciliation, run_stale_pending_cleanup,
    run_expiry_sweep, run_due_unbans
)

logger = logging.getLogger(__name__)


class SubscriptionScheduler:
    """Owns the AsyncIOScheduler and wires each job to its services"""

    def __init__(self, container):
        self.container = container

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        c = self.container
        first_run = datetime.now(timezone.utc) + timedelta(seconds=30)

        # ===== JOB 1: EXPIRING-SOON NOTICE =====
        self.scheduler.add_job(
            run_expiring_soon_notice,
            trigger=CronTrigger(minute=0),
            kwargs={"subscriptions": c.subscriptions, "notifications": c.notifications},
            id="expiring_soon_notice",
            name="⏰ Expiring Subscription Notice",
            replace_existing=True
        )
        logger.info("✅ Expiring-soon notice scheduled hourly")

        # ===== JOB 2: PENDING TRANSACTION RECONCILIATION =====
        self.scheduler.add_job(
            run_pending_reconciliation,
            trigger=IntervalTrigger(minutes=2, start_date=first_run),
            kwargs={"reconciliation": c.reconciliation},
            id="pending_transaction_reconciliation",
            name="🔄 Pending Transaction Reconciliation",
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info("✅ Pending transaction reconciliation scheduled every 2 minutes")

        # ===== JOB 3: STALE PENDING CLEANUP =====
        self.scheduler.add_job(
            run_stale_pending_cleanup,
            trigger=IntervalTrigger(hours=2, start_date=first_run),
            kwargs={"reconciliation": c.reconciliation},
            id="stale_pending_cleanup",
            name="🧹 Stale Pending Transaction Cleanup",
            replace_existing=True
        )
        logger.info("✅ Stale pending cleanup scheduled every 2 hours")

        # ===== JOB 4: EXPIRY SWEEP =====
        self.scheduler.add_job(
            run_expiry_sweep,
            trigger=IntervalTrigger(minutes=10, start_date=first_run),
            kwargs={
                "subscriptions": c.subscriptions,
                "groups": c.groups,
                "notifications": c.notifications,
            },
            id="expiry_sweep",
            name="⌛ Expired Subscription Sweep",
            replace_existing=True
        )
        logger.info("✅ Expiry sweep scheduled every 10 minutes")

        # ===== JOB 5: DELAYED UNBANS =====
        self.scheduler.add_job(
            run_due_unbans,
            trigger=IntervalTrigger(seconds=30),
            kwargs={"groups": c.groups},
            id="scheduled_unbans",
            name="🔓 Scheduled Unbans",
            misfire_grace_time=30,
            replace_existing=True
        )
        logger.info("✅ Scheduled unban processor running every 30 seconds")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 Active jobs: {job_names}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Subscription scheduler stopped")
