"""Periodic accrual runner built on APScheduler."""

from datetime import datetime
from typing import Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .models import AccrualRunResponse
from .service import RewardLedgerService

ACCRUAL_JOB_ID = "profit_accrual"


class AccrualScheduler:
    """Runs ``RewardLedgerService.run_accrual`` on a fixed interval.

    Overlapping runs are prevented with ``max_instances=1`` and missed runs
    collapse into one. A run that overlaps a manual credit is still safe
    because every credit claims its window with a compare-and-swap.
    """

    def __init__(self, service: RewardLedgerService, interval_seconds: Optional[int] = None):
        self.service = service
        self.interval_seconds = interval_seconds or service.settings.accrual_interval_seconds
        self.scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=ACCRUAL_JOB_ID,
            name="Profit Accrual",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Accrual scheduler started; running every {self.interval_seconds}s")

    def shutdown(self, wait: bool = True) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("Accrual scheduler stopped")

    def run_once(self, now: Optional[datetime] = None) -> AccrualRunResponse:
        return self.service.run_accrual(now)
