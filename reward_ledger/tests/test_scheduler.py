"""
Unit Tests for the Accrual Scheduler

Tests cover:
1. A single sweep through run_once
2. Job registration on start and clean shutdown
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from reward_ledger.scheduler import ACCRUAL_JOB_ID, AccrualScheduler


T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


class TestAccrualScheduler:
    """Tests for the scheduled accrual sweep."""

    def test_run_once_credits_due_joins(self, service, storage, approved_join):
        scheduler = AccrualScheduler(service)

        response = scheduler.run_once(T0 + timedelta(hours=25))

        assert response.offers.credited == 1
        assert response.certificates.processed == 0
        assert storage.get_user(approved_join.user_id).balance == Decimal("10.00")

    def test_run_once_twice_same_window(self, service, storage, approved_join):
        """Test that overlapping sweeps never double credit."""
        scheduler = AccrualScheduler(service)
        now = T0 + timedelta(hours=25)

        scheduler.run_once(now)
        second = scheduler.run_once(now)

        assert second.offers.credited == 0
        assert len(storage.list_daily_profits(approved_join.id)) == 1

    def test_start_registers_single_job(self, service):
        scheduler = AccrualScheduler(service, interval_seconds=3600)
        scheduler.start()
        try:
            assert scheduler.running
            job = scheduler.scheduler.get_job(ACCRUAL_JOB_ID)
            assert job is not None
            assert job.max_instances == 1
            assert job.coalesce is True
            assert job.trigger.interval == timedelta(seconds=3600)
        finally:
            scheduler.shutdown()

        assert not scheduler.running

    def test_interval_defaults_to_settings(self, service, settings):
        assert AccrualScheduler(service).interval_seconds == settings.accrual_interval_seconds
