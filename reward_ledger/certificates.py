import calendar
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
from uuid import UUID, uuid4

from loguru import logger

from .errors import (
    ConcurrencyConflict,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerServiceError,
    ValidationError,
)
from .models import (
    AccrualSummary,
    BalanceType,
    CENT,
    CountdownState,
    CreditOutcome,
    CreditResult,
    InvestmentCertificate,
    InvestmentCertificateJoin,
    JoinStatus,
    ProfitCountdown,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .referrals import ReferralPropagator
from .storage import InMemoryStorage


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's end."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class CertificateLedger:
    """Investment certificate joins funded from one of the user's balances.

    Joining debits the nominated balance in the same transaction that creates
    the pending join. Approved joins pay ``profit_rate`` percent of the
    invested amount every ``profit_duration_months``.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        referrals: Optional[ReferralPropagator] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.referrals = referrals or ReferralPropagator(self.storage)

    def join(
        self,
        user_id: UUID,
        certificate_id: UUID,
        amount: Decimal,
        balance_type: Union[BalanceType, str],
        now: Optional[datetime] = None,
    ) -> InvestmentCertificateJoin:
        now = now or datetime.now(timezone.utc)
        amount = Decimal(str(amount))
        try:
            balance_type = BalanceType(balance_type)
        except ValueError:
            raise ValidationError(f"Unknown balance type: {balance_type}")

        with self.storage.atomic():
            user = self.storage.get_user(user_id)
            certificate = self.storage.get_certificate(certificate_id)
            self._validate_join(certificate, user_id, amount)

            available = user.balance_of(balance_type)
            if available < amount:
                raise InsufficientBalanceError(
                    f"Insufficient {balance_type.value}: available {available}, requested {amount}"
                )

            join_id = uuid4()
            self.storage.update_balances(
                user_id, {balance_type: -amount}, expected_version=user.version
            )
            self.storage.append(Transaction(
                id=uuid4(),
                user_id=user_id,
                type=balance_type.investment_type,
                amount=amount,
                status=TransactionStatus.COMPLETED,
                certificate_join_id=join_id,
                description=f"Investment in certificate {certificate.title or certificate.id}",
                created_at=now,
            ))
            join = self.storage.insert_certificate_join(InvestmentCertificateJoin(
                id=join_id,
                user_id=user_id,
                certificate_id=certificate_id,
                balance_type=balance_type,
                invested_amount=amount,
                status=JoinStatus.PENDING,
                joined_at=now,
            ))

        logger.info(
            f"User {user_id} invested {amount} from {balance_type.value} "
            f"in certificate {certificate_id} (join {join.id})"
        )
        return join

    def _validate_join(self, certificate: InvestmentCertificate, user_id: UUID, amount: Decimal) -> None:
        if not certificate.active:
            raise ValidationError(f"Certificate {certificate.id} is not active")
        if amount <= 0:
            raise ValidationError("Investment amount must be positive")
        if amount < certificate.invested_amount:
            raise ValidationError(
                f"Minimum investment for certificate {certificate.id} is {certificate.invested_amount}"
            )

        open_joins = [
            j for j in self.storage.find_certificate_joins(certificate_id=certificate.id)
            if j.status in (JoinStatus.PENDING, JoinStatus.APPROVED)
        ]
        if certificate.join_limit is not None and len(open_joins) >= certificate.join_limit:
            raise ValidationError(f"Certificate {certificate.id} has reached its join limit")
        if certificate.user_join_limit is not None:
            held = sum(1 for j in open_joins if j.user_id == user_id)
            if held >= certificate.user_join_limit:
                raise ValidationError(
                    f"User {user_id} has reached the join limit for certificate {certificate.id}"
                )

    def approve(self, join_id: UUID, now: Optional[datetime] = None) -> InvestmentCertificateJoin:
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            join = self.storage.get_certificate_join(join_id)
            if not join.can_approve():
                raise InvalidStateError(f"Cannot approve certificate join in {join.status.value} state")
            certificate = self.storage.get_certificate(join.certificate_id)
            join = self.storage.update_certificate_join(
                join_id,
                status=JoinStatus.APPROVED,
                approved_at=now,
                next_profit_date=add_months(now, certificate.profit_duration_months),
                periods_paid=0,
            )

        logger.info(f"Certificate join {join_id} approved; next profit on {join.next_profit_date.isoformat()}")
        return join

    def reject(self, join_id: UUID, now: Optional[datetime] = None) -> InvestmentCertificateJoin:
        """Reject a pending join and return the invested amount to its funding balance."""
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            join = self.storage.get_certificate_join(join_id)
            if not join.can_reject():
                raise InvalidStateError(f"Cannot reject certificate join in {join.status.value} state")
            join = self.storage.update_certificate_join(join_id, status=JoinStatus.REJECTED)
            self.storage.update_balances(join.user_id, {join.balance_type: join.invested_amount})
            self.storage.append(Transaction(
                id=uuid4(),
                user_id=join.user_id,
                type=TransactionType.INVESTMENT_REFUND,
                amount=join.invested_amount,
                status=TransactionStatus.COMPLETED,
                certificate_join_id=join_id,
                description=f"Refund of rejected investment to {join.balance_type.value}",
                created_at=now,
            ))

        logger.info(f"Certificate join {join_id} rejected; {join.invested_amount} refunded")
        return join

    def withdraw(self, join_id: UUID) -> InvestmentCertificateJoin:
        with self.storage.atomic():
            join = self.storage.get_certificate_join(join_id)
            if not join.can_withdraw():
                raise InvalidStateError(f"Cannot withdraw certificate join in {join.status.value} state")
            join = self.storage.update_certificate_join(join_id, status=JoinStatus.WITHDRAWN)

        logger.info(f"Certificate join {join_id} withdrawn by user {join.user_id}")
        return join

    def profit_date(
        self, join: InvestmentCertificateJoin, certificate: InvestmentCertificate, period: int
    ) -> datetime:
        """Due date of the n-th profit period, counted from approval."""
        return add_months(join.approved_at, period * certificate.profit_duration_months)

    def profit_amount(self, join: InvestmentCertificateJoin, certificate: InvestmentCertificate) -> Decimal:
        return (join.invested_amount * certificate.profit_rate / Decimal(100)).quantize(CENT, ROUND_HALF_UP)

    def credit_due_profit(self, join_id: UUID, now: Optional[datetime] = None) -> CreditResult:
        now = now or datetime.now(timezone.utc)
        join = self.storage.get_certificate_join(join_id)

        if join.status != JoinStatus.APPROVED:
            return CreditResult(join_id=join_id, outcome=CreditOutcome.STOPPED)
        if join.next_profit_date is None or now < join.next_profit_date:
            return CreditResult(join_id=join_id, outcome=CreditOutcome.NOT_DUE)

        certificate = self.storage.get_certificate(join.certificate_id)
        amount = self.profit_amount(join, certificate)
        if amount <= 0:
            return CreditResult(join_id=join_id, outcome=CreditOutcome.NO_PROFIT)

        try:
            with self.storage.atomic():
                current = self.storage.get_certificate_join(join_id)
                if current.status != JoinStatus.APPROVED:
                    logger.debug(f"Certificate join {join_id} stopped before its credit was written")
                    return CreditResult(join_id=join_id, outcome=CreditOutcome.STOPPED)

                self.storage.compare_and_set(
                    "certificate_joins", join_id, "next_profit_date", join.next_profit_date,
                    self.profit_date(join, certificate, join.periods_paid + 2),
                )
                self.storage.update_certificate_join(
                    join_id, last_profit_at=now, periods_paid=join.periods_paid + 1
                )
                self.storage.update_balances(join.user_id, {BalanceType.BALANCE: amount})
                transaction = self.storage.append(Transaction(
                    id=uuid4(),
                    user_id=join.user_id,
                    type=TransactionType.CERTIFICATE_PROFIT,
                    amount=amount,
                    status=TransactionStatus.COMPLETED,
                    certificate_join_id=join_id,
                    description=f"Profit from certificate {certificate.title or certificate.id}",
                    created_at=now,
                ))
                team = self.referrals.distribute_team_earnings(
                    join.user_id, amount, now, certificate_join_id=join_id
                )
        except ConcurrencyConflict:
            logger.warning(f"Profit period for certificate join {join_id} was claimed by another caller")
            return CreditResult(join_id=join_id, outcome=CreditOutcome.ALREADY_CREDITED)

        logger.info(f"Credited {amount} certificate profit to user {join.user_id} for join {join_id}")
        return CreditResult(
            join_id=join_id,
            outcome=CreditOutcome.CREDITED,
            amount=amount,
            credited_at=now,
            transaction=transaction,
            team_earnings=team,
        )

    def time_to_next_profit(self, join_id: UUID, now: Optional[datetime] = None) -> ProfitCountdown:
        now = now or datetime.now(timezone.utc)
        join = self.storage.get_certificate_join(join_id)
        if join.status != JoinStatus.APPROVED or join.next_profit_date is None:
            return ProfitCountdown(join_id=join_id, state=CountdownState.STOPPED)

        remaining = (join.next_profit_date - now).total_seconds()
        if remaining <= 0:
            return ProfitCountdown(
                join_id=join_id, state=CountdownState.DUE, next_profit_at=join.next_profit_date
            )
        return ProfitCountdown(
            join_id=join_id,
            state=CountdownState.COUNTING,
            next_profit_at=join.next_profit_date,
            remaining_seconds=remaining,
        )

    def list_user_joins(self, user_id: UUID) -> list[InvestmentCertificateJoin]:
        self.storage.get_user(user_id)
        joins = self.storage.find_certificate_joins(user_id=user_id)
        joins.sort(key=lambda j: j.joined_at, reverse=True)
        return joins

    def accrue_all(self, now: Optional[datetime] = None) -> AccrualSummary:
        now = now or datetime.now(timezone.utc)
        summary = AccrualSummary(run_at=now)

        for join in self.storage.find_certificate_joins(status=JoinStatus.APPROVED):
            try:
                summary.record(self.credit_due_profit(join.id, now))
            except LedgerServiceError:
                summary.processed += 1
                summary.failed += 1
                logger.exception(f"Certificate profit accrual failed for join {join.id}")

        logger.info(
            f"Certificate accrual run: {summary.credited} credited, {summary.not_due} not due, "
            f"{summary.failed} failed"
        )
        return summary
