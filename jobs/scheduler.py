"""
Background Job Scheduler

One periodic job: the investment maturation sweep. Deposit status polling
is not scheduled here; each pending push owns a short-lived task in
services.deposit_poller.
"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.maturation_sweep import run_maturation_sweep

logger = logging.getLogger(__name__)

MATURATION_JOB_ID = "investment_maturation_sweep"


class InvestmentScheduler:
    """AsyncIOScheduler wrapper owning the maturation sweep"""

    def __init__(self, ledger, notifier, interval_seconds: Optional[int] = None):
        self.ledger = ledger
        self.notifier = notifier
        self.interval_seconds = interval_seconds or Config.MATURATION_SWEEP_INTERVAL_SECONDS

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # A sweep never overlaps the previous one
            'misfire_grace_time': 30
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    async def sweep(self) -> int:
        try:
            return await run_maturation_sweep(self.ledger, self.notifier)
        except Exception as e:
            # Keep the job scheduled; the next tick retries whatever is still due
            logger.error(f"❌ MATURATION: Sweep failed: {type(e).__name__}: {e}", exc_info=True)
            return 0

    def setup_jobs(self):
        self.scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=MATURATION_JOB_ID,
            name="🎉 Investment Maturation Sweep",
            replace_existing=True
        )
        logger.info(f"✅ Maturation sweep scheduled every {self.interval_seconds} seconds")

    def start(self):
        """Register jobs and start; must be called from inside the running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running
