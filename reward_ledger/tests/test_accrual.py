"""
Unit Tests for Daily Profit Accrual

Tests cover:
1. One credit per 24h window
2. Stop conditions (withdrawn, expired, zero profit)
3. Countdown to the next credit
4. Concurrent credits of the same join
5. Sweeps over all approved joins
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from reward_ledger.models import (
    BalanceType,
    CountdownState,
    CreditOutcome,
    DerivedStatus,
    TransactionType,
)


T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


class TestCreditDueProfit:
    """Tests for crediting a single join."""

    def test_not_due_before_window(self, service, storage, approved_join):
        """Test that nothing is credited 23h after approval."""
        result = service.accrual.credit_due_profit(approved_join.id, T0 + timedelta(hours=23))

        assert result.outcome == CreditOutcome.NOT_DUE
        assert storage.list_daily_profits(approved_join.id) == []
        assert storage.get_user(approved_join.user_id).balance == Decimal("0.00")

    def test_credit_after_window(self, service, storage, approved_join):
        """Test that one record of daily_profit is written 25h after approval."""
        now = T0 + timedelta(hours=25)

        result = service.accrual.credit_due_profit(approved_join.id, now)

        assert result.credited
        assert result.amount == Decimal("10.00")
        records = storage.list_daily_profits(approved_join.id)
        assert len(records) == 1
        assert records[0].amount == Decimal("10.00")
        assert records[0].transaction_id == result.transaction.id
        assert storage.get_offer_join(approved_join.id).last_profit_at == now
        assert storage.get_user(approved_join.user_id).balance_of(BalanceType.BALANCE) == Decimal("10.00")

    def test_second_credit_in_same_window(self, service, storage, approved_join):
        """Test that a repeated call within the window writes nothing."""
        service.accrual.credit_due_profit(approved_join.id, T0 + timedelta(hours=25))

        result = service.accrual.credit_due_profit(approved_join.id, T0 + timedelta(hours=30))

        assert result.outcome == CreditOutcome.NOT_DUE
        assert len(storage.list_daily_profits(approved_join.id)) == 1

    def test_one_record_per_full_window(self, service, storage, approved_join):
        """Test that N windows give N records with anchors 24h apart."""
        for day in range(1, 6):
            result = service.accrual.credit_due_profit(approved_join.id, T0 + timedelta(days=day))
            assert result.credited

        records = storage.list_daily_profits(approved_join.id)
        assert len(records) == 5
        gaps = [b.profit_date - a.profit_date for a, b in zip(records, records[1:])]
        assert all(gap == timedelta(hours=24) for gap in gaps)
        assert service.accrual.total_profit(approved_join.id) == Decimal("50.00")

    def test_records_match_transactions(self, service, storage, approved_join):
        """Test that profit records and daily_profit transactions sum to the same amount."""
        for day in range(1, 4):
            service.accrual.credit_due_profit(approved_join.id, T0 + timedelta(days=day))

        transactions = storage.list_transactions(
            type=TransactionType.DAILY_PROFIT, offer_join_id=approved_join.id
        )
        assert sum(t.amount for t in transactions) == service.accrual.total_profit(approved_join.id)
        assert len(transactions) == 3

    def test_withdrawn_join_stops(self, service, storage, approved_join):
        service.offers.withdraw(approved_join.id)

        result = service.accrual.credit_due_profit(approved_join.id, T0 + timedelta(hours=25))

        assert result.outcome == CreditOutcome.STOPPED
        assert storage.list_daily_profits(approved_join.id) == []

    def test_expired_join_stops(self, service, storage, approved_join):
        """Test that a join past maturity earns nothing even with an active offer."""
        result = service.accrual.credit_due_profit(approved_join.id, T0 + timedelta(days=31))

        assert result.outcome == CreditOutcome.STOPPED
        assert storage.list_daily_profits(approved_join.id) == []

    def test_pending_join_stops(self, service, user, offer):
        join = service.offers.join(user.id, offer.id, now=T0)

        assert service.accrual.credit_due_profit(join.id, T0 + timedelta(days=2)).outcome == CreditOutcome.STOPPED

    def test_zero_profit_offer(self, service, storage, user):
        offer = storage.add_offer(daily_profit=Decimal("0.00"))
        join = service.offers.join(user.id, offer.id, now=T0)
        service.offers.approve(join.id, now=T0)

        result = service.accrual.credit_due_profit(join.id, T0 + timedelta(hours=25))

        assert result.outcome == CreditOutcome.NO_PROFIT
        assert storage.list_transactions(user_id=user.id) == []

    def test_offer_deactivated_before_commit(self, service, storage, offer, approved_join, monkeypatch):
        """Test that the active check is repeated under the store lock."""
        check = service.offers.derived_status
        seen = []

        def deactivate_after_first_check(join, current_offer, now=None):
            status = check(join, current_offer, now)
            if not seen:
                storage.set_offer_active(offer.id, False)
            seen.append(status)
            return status

        monkeypatch.setattr(service.offers, "derived_status", deactivate_after_first_check)

        result = service.accrual.credit_due_profit(approved_join.id, T0 + timedelta(hours=25))

        assert result.outcome == CreditOutcome.STOPPED
        assert seen == [DerivedStatus.ACTIVE, DerivedStatus.INACTIVE]
        assert storage.list_daily_profits(approved_join.id) == []
        assert storage.list_transactions(user_id=approved_join.user_id) == []
        assert storage.get_offer_join(approved_join.id).last_profit_at == T0

    def test_credit_pays_team_earnings(self, service, storage, offer):
        """Test that a profit credit pays the referrer its level-1 share."""
        referrer = storage.add_user("REFERRER")
        member = storage.add_user("MEMBER")
        service.referrals.process_referral(member.id, "REFERRER", now=T0)
        join = service.offers.join(member.id, offer.id, now=T0)
        service.offers.approve(join.id, now=T0)

        result = service.accrual.credit_due_profit(join.id, T0 + timedelta(hours=24))

        assert [t.amount for t in result.team_earnings] == [Decimal("0.30")]
        assert storage.get_user(referrer.id).team_earnings == Decimal("0.30")


class TestConcurrentCredits:
    """Tests for racing credits of one join."""

    def test_many_threads_write_one_record(self, service, storage, approved_join):
        """Test that concurrent callers produce exactly one record."""
        now = T0 + timedelta(hours=25)
        barrier = threading.Barrier(8)
        outcomes = []

        def credit():
            barrier.wait()
            outcomes.append(service.accrual.credit_due_profit(approved_join.id, now).outcome)

        threads = [threading.Thread(target=credit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(CreditOutcome.CREDITED) == 1
        assert set(outcomes) <= {
            CreditOutcome.CREDITED, CreditOutcome.ALREADY_CREDITED, CreditOutcome.NOT_DUE
        }
        assert len(storage.list_daily_profits(approved_join.id)) == 1
        assert storage.get_user(approved_join.user_id).balance == Decimal("10.00")


class TestCountdown:
    """Tests for time_to_next_profit."""

    def test_counting(self, service, approved_join):
        countdown = service.accrual.time_to_next_profit(approved_join.id, T0 + timedelta(hours=1))

        assert countdown.state == CountdownState.COUNTING
        assert countdown.next_profit_at == T0 + timedelta(hours=24)
        assert countdown.remaining_seconds == timedelta(hours=23).total_seconds()

    def test_due(self, service, approved_join):
        countdown = service.accrual.time_to_next_profit(approved_join.id, T0 + timedelta(hours=25))

        assert countdown.state == CountdownState.DUE
        assert countdown.remaining_seconds == 0

    def test_resets_after_credit(self, service, approved_join):
        now = T0 + timedelta(hours=25)
        service.accrual.credit_due_profit(approved_join.id, now)

        countdown = service.accrual.time_to_next_profit(approved_join.id, now)

        assert countdown.state == CountdownState.COUNTING
        assert countdown.next_profit_at == now + timedelta(hours=24)

    def test_stopped_when_withdrawn(self, service, approved_join):
        service.offers.withdraw(approved_join.id)

        countdown = service.accrual.time_to_next_profit(approved_join.id, T0 + timedelta(hours=1))

        assert countdown.state == CountdownState.STOPPED
        assert countdown.next_profit_at is None


class TestAccrueAll:
    """Tests for the accrual sweep."""

    def test_sweep_counts_outcomes(self, service, storage, offer, approved_join):
        other = storage.add_user("OTHER001")
        late = service.offers.join(other.id, offer.id, now=T0)
        service.offers.approve(late.id, now=T0 + timedelta(hours=12))

        summary = service.accrual.accrue_all(T0 + timedelta(hours=25))

        assert summary.processed == 2
        assert summary.credited == 1
        assert summary.not_due == 1
        assert summary.failed == 0
        assert summary.total_amount == Decimal("10.00")

    def test_sweep_is_idempotent_per_window(self, service, storage, approved_join):
        now = T0 + timedelta(hours=25)
        service.accrual.accrue_all(now)
        service.accrual.accrue_all(now)

        assert len(storage.list_daily_profits(approved_join.id)) == 1

    def test_zero_profit_counted_separately(self, service, storage, user):
        offer = storage.add_offer(daily_profit=Decimal("0.00"))
        join = service.offers.join(user.id, offer.id, now=T0)
        service.offers.approve(join.id, now=T0)

        summary = service.accrual.accrue_all(T0 + timedelta(hours=25))

        assert summary.no_profit == 1
        assert summary.not_due == 0
        assert summary.credited == 0
