"""
Unit Tests for Investment Certificates

Tests cover:
1. Funding a join from a chosen balance
2. Join limits and minimum investment
3. Approve / reject (with refund) / withdraw
4. Periodic certificate profit
5. Concurrent credits and month-end schedules
"""

import threading

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from reward_ledger.certificates import add_months
from reward_ledger.errors import InsufficientBalanceError, InvalidStateError, ValidationError
from reward_ledger.models import BalanceType, CountdownState, CreditOutcome, JoinStatus, TransactionType


T0 = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def certificate(storage):
    return storage.add_certificate(
        title="Six Month", invested_amount=Decimal("100.00"),
        profit_rate=Decimal("5"), profit_duration_months=6,
    )


@pytest.fixture
def pending(service, user, certificate):
    return service.certificates.join(user.id, certificate.id, Decimal("200.00"), BalanceType.BONUSES, now=T0)


class TestAddMonths:
    """Tests for calendar month arithmetic."""

    def test_clamps_to_month_end(self):
        assert add_months(T0, 1) == datetime(2025, 2, 28, 12, 0, tzinfo=timezone.utc)
        assert add_months(datetime(2027, 1, 31, tzinfo=timezone.utc), 13) == datetime(2028, 2, 29, tzinfo=timezone.utc)

    def test_crosses_year(self):
        assert add_months(datetime(2025, 12, 15, tzinfo=timezone.utc), 1) == datetime(2026, 1, 15, tzinfo=timezone.utc)


class TestJoinCertificate:
    """Tests for funding certificate joins."""

    def test_insufficient_balance_writes_nothing(self, service, storage, user, certificate):
        """Test that investing 500 from 300 bonuses fails with no debit and no join."""
        with pytest.raises(InsufficientBalanceError):
            service.certificates.join(user.id, certificate.id, Decimal("500.00"), "bonuses", now=T0)

        assert storage.get_user(user.id).bonuses == Decimal("300.00")
        assert storage.find_certificate_joins(user_id=user.id) == []
        assert storage.list_transactions(user_id=user.id) == []

    def test_join_debits_chosen_balance(self, storage, user, pending):
        assert pending.status == JoinStatus.PENDING
        assert pending.balance_type == BalanceType.BONUSES
        assert storage.get_user(user.id).bonuses == Decimal("100.00")

        transactions = storage.list_transactions(certificate_join_id=pending.id)
        assert [(t.type, t.amount) for t in transactions] == [
            (TransactionType.BONUSES_INVESTMENT, Decimal("200.00"))
        ]

    def test_unknown_balance_type(self, service, user, certificate):
        with pytest.raises(ValidationError):
            service.certificates.join(user.id, certificate.id, Decimal("200.00"), "crypto", now=T0)

    def test_below_minimum(self, service, user, certificate):
        with pytest.raises(ValidationError):
            service.certificates.join(user.id, certificate.id, Decimal("50.00"), BalanceType.BONUSES, now=T0)

    def test_inactive_certificate(self, service, storage, user):
        certificate = storage.add_certificate(
            invested_amount=Decimal("100.00"), profit_rate=Decimal("5"), active=False
        )

        with pytest.raises(ValidationError):
            service.certificates.join(user.id, certificate.id, Decimal("100.00"), BalanceType.BONUSES, now=T0)

    def test_user_join_limit(self, service, storage, user):
        """Test that the per-user limit counts pending and approved joins only."""
        certificate = storage.add_certificate(
            invested_amount=Decimal("100.00"), profit_rate=Decimal("5"), user_join_limit=1
        )
        first = service.certificates.join(user.id, certificate.id, Decimal("100.00"), BalanceType.BONUSES, now=T0)

        with pytest.raises(ValidationError):
            service.certificates.join(user.id, certificate.id, Decimal("100.00"), BalanceType.BONUSES, now=T0)

        service.certificates.withdraw(first.id)
        second = service.certificates.join(user.id, certificate.id, Decimal("100.00"), BalanceType.BONUSES, now=T0)
        assert second.status == JoinStatus.PENDING


class TestCertificateTransitions:
    """Tests for admin and user transitions."""

    def test_approve_schedules_first_profit(self, service, pending):
        approved = service.certificates.approve(pending.id, now=T0)

        assert approved.status == JoinStatus.APPROVED
        assert approved.approved_at == T0
        assert approved.next_profit_date == datetime(2025, 7, 31, 12, 0, tzinfo=timezone.utc)

    def test_reject_refunds_funding_balance(self, service, storage, user, pending):
        """Test that rejecting a pending join returns the investment."""
        service.certificates.reject(pending.id, now=T0)

        assert storage.get_user(user.id).bonuses == Decimal("300.00")
        refunds = storage.list_transactions(user_id=user.id, type=TransactionType.INVESTMENT_REFUND)
        assert [t.amount for t in refunds] == [Decimal("200.00")]

    def test_withdraw_does_not_refund(self, service, storage, user, pending):
        service.certificates.withdraw(pending.id)

        assert storage.get_user(user.id).bonuses == Decimal("100.00")
        assert storage.get_certificate_join(pending.id).status == JoinStatus.WITHDRAWN

    def test_cannot_reject_approved(self, service, pending):
        service.certificates.approve(pending.id, now=T0)

        with pytest.raises(InvalidStateError):
            service.certificates.reject(pending.id, now=T0)


class TestCertificateProfit:
    """Tests for certificate profit credits."""

    def test_not_due_before_next_profit_date(self, service, pending):
        service.certificates.approve(pending.id, now=T0)

        result = service.certificates.credit_due_profit(pending.id, T0 + timedelta(days=30))

        assert result.outcome == CreditOutcome.NOT_DUE

    def test_credit_on_due_date(self, service, storage, user, pending):
        """Test that 5% of 200 is credited and the next date moves six months on."""
        approved = service.certificates.approve(pending.id, now=T0)
        due = approved.next_profit_date

        result = service.certificates.credit_due_profit(pending.id, due)

        assert result.credited
        assert result.amount == Decimal("10.00")
        assert storage.get_user(user.id).balance == Decimal("10.00")
        join = storage.get_certificate_join(pending.id)
        assert join.next_profit_date == add_months(due, 6)
        assert join.last_profit_at == due

        again = service.certificates.credit_due_profit(pending.id, due)
        assert again.outcome == CreditOutcome.NOT_DUE
        assert len(storage.list_transactions(type=TransactionType.CERTIFICATE_PROFIT)) == 1

    def test_withdrawn_join_stops(self, service, pending):
        approved = service.certificates.approve(pending.id, now=T0)
        service.certificates.withdraw(pending.id)

        result = service.certificates.credit_due_profit(pending.id, approved.next_profit_date)

        assert result.outcome == CreditOutcome.STOPPED

    def test_countdown(self, service, pending):
        assert service.certificates.time_to_next_profit(pending.id, T0).state == CountdownState.STOPPED

        approved = service.certificates.approve(pending.id, now=T0)
        countdown = service.certificates.time_to_next_profit(pending.id, T0)

        assert countdown.state == CountdownState.COUNTING
        assert countdown.next_profit_at == approved.next_profit_date
        assert service.certificates.time_to_next_profit(
            pending.id, approved.next_profit_date
        ).state == CountdownState.DUE

    def test_accrue_all(self, service, pending):
        approved = service.certificates.approve(pending.id, now=T0)

        summary = service.certificates.accrue_all(approved.next_profit_date)

        assert summary.credited == 1
        assert summary.total_amount == Decimal("10.00")


class TestConcurrentCertificateCredits:
    """Tests for racing credits of one certificate join."""

    def test_many_threads_write_one_profit(self, service, storage, user, pending):
        approved = service.certificates.approve(pending.id, now=T0)
        due = approved.next_profit_date
        barrier = threading.Barrier(8)
        outcomes = []

        def credit():
            barrier.wait()
            outcomes.append(service.certificates.credit_due_profit(pending.id, due).outcome)

        threads = [threading.Thread(target=credit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(CreditOutcome.CREDITED) == 1
        assert set(outcomes) <= {
            CreditOutcome.CREDITED, CreditOutcome.ALREADY_CREDITED, CreditOutcome.NOT_DUE
        }
        assert len(storage.list_transactions(type=TransactionType.CERTIFICATE_PROFIT)) == 1
        assert storage.get_user(user.id).balance == Decimal("10.00")
        assert storage.get_certificate_join(pending.id).periods_paid == 1


class TestMonthEndSchedule:
    """Tests for profit dates on certificates approved at a month end."""

    def test_periods_counted_from_approval(self, service, storage, user):
        """Test that a clamped February date does not pull later periods back."""
        certificate = storage.add_certificate(
            invested_amount=Decimal("100.00"), profit_rate=Decimal("1"), profit_duration_months=1,
        )
        join = service.certificates.join(user.id, certificate.id, Decimal("100.00"), BalanceType.BONUSES, now=T0)
        approved = service.certificates.approve(join.id, now=T0)
        assert approved.next_profit_date == datetime(2025, 2, 28, 12, 0, tzinfo=timezone.utc)

        service.certificates.credit_due_profit(join.id, approved.next_profit_date)
        march = storage.get_certificate_join(join.id).next_profit_date
        assert march == datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc)

        service.certificates.credit_due_profit(join.id, march)
        assert storage.get_certificate_join(join.id).next_profit_date == datetime(2025, 4, 30, 12, 0, tzinfo=timezone.utc)
